"""
Tests for packet tracing and debug capture.
"""

import logging

import pytest

from steam_query.servers.connection import Endpoint
from steam_query.utils import debug


@pytest.fixture
def debug_file(tmp_path):
    path = tmp_path / 'debug.log'
    yield path
    debug.disable_debug()


class TestFormatting:

    def test_format_buffer(self):
        assert debug.format_buffer(b'\xff\xff\xff\xff\x54') == 'ff ff ff ff 54'
        assert debug.format_buffer(b'') == '<empty>'

    def test_log_packet(self, caplog):
        logger = logging.getLogger('steam_query.tests')
        endpoint = Endpoint('10.0.0.1', 27015)

        with caplog.at_level(logging.DEBUG, logger='steam_query.tests'):
            debug.log_packet(logger, 'SERVER', endpoint, 'received', b'\x49\x11')

        assert '[SERVER] 10.0.0.1:27015 - received: 49 11' in caplog.text

    def test_log_packet_skipped_above_debug(self, caplog):
        logger = logging.getLogger('steam_query.tests')

        with caplog.at_level(logging.INFO, logger='steam_query.tests'):
            debug.log_packet(logger, 'SERVER', Endpoint('10.0.0.1', 27015), 'sent', b'\x54')

        assert caplog.text == ''


class TestEnableDebug:

    def test_writes_package_records(self, debug_file):
        debug.enable_debug(str(debug_file))

        logging.getLogger('steam_query.servers.server').debug('[SERVER] probe')
        debug.disable_debug()

        assert '[SERVER] probe' in debug_file.read_text(encoding='utf-8')

    def test_enable_twice_raises(self, debug_file):
        debug.enable_debug(str(debug_file))

        with pytest.raises(RuntimeError):
            debug.enable_debug(str(debug_file))

    def test_disable_without_enable(self):
        debug.disable_debug()
