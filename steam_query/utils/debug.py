"""
Debug helpers

Packet traces are written through the standard logging module at DEBUG
level. enable_debug() captures them (and everything else the package logs)
into a file.
"""

import logging

from steam_query.config import config

PACKAGE_LOGGER = 'steam_query'

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_debug_handler = None


def format_buffer(buffer: bytes) -> str:
    """
    Format a buffer as space separated hex pairs.

    Example:
        >>> format_buffer(b'\\xff\\xffT')
        'ff ff 54'
    """
    if not buffer:
        return '<empty>'
    return buffer.hex(' ')


def log_packet(logger: logging.Logger, tag: str, endpoint, label: str, buffer: bytes):
    """Log a sent or received datagram as a hex dump."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug(f"[{tag}] {endpoint.ip}:{endpoint.port} - {label}: {format_buffer(buffer)}")


def enable_debug(file: str = 'debug.log') -> logging.Handler:
    """
    Capture every DEBUG record of the package into a file.

    Args:
        file: Path of the log file, appended to

    Returns:
        The installed handler

    Raises:
        RuntimeError: Debug capture is already enabled
    """
    global _debug_handler

    if _debug_handler is not None:
        raise RuntimeError('Debug already enabled')

    handler = logging.FileHandler(file, encoding='utf-8')
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    _debug_handler = handler
    return handler


def disable_debug():
    global _debug_handler

    if _debug_handler is None:
        return

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.removeHandler(_debug_handler)
    logger.setLevel(logging.NOTSET)
    _debug_handler.close()
    _debug_handler = None


def setup_logging(level: str = None):
    """Configure root logging the way the package expects."""
    logging.basicConfig(
        level=getattr(logging, (level or config.LOG_LEVEL).upper()),
        format=LOG_FORMAT
    )
