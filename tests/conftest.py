"""
Pytest configuration for steam_query tests.

Async tests use pytest-asyncio; the peers fixture starts mock UDP peers
and closes them after the test.
"""

import pytest_asyncio

from tests.mock_peer import start_mock_peer


@pytest_asyncio.fixture
async def peers():
    started = []

    async def start(handler):
        peer = await start_mock_peer(handler)
        started.append(peer)
        return peer

    yield start

    for peer in started:
        peer.close()
