"""
UDP query connection

Turns a connectionless, lossy datagram socket into awaitable
request/response pairs.

Every awaited response is a PendingQuery registered with the set of header
bytes it accepts. Inbound payloads are offered to pending queries in
registration order and satisfy at most one of them. query() resends its
request once at half the timeout to compensate for datagram loss.
"""

import asyncio
import logging
import socket
from dataclasses import dataclass, field
from typing import Iterable, Optional

from steam_query.config import config
from steam_query.errors import NotConnected, QueryError, Timeout, TransportError
from steam_query.utils.debug import log_packet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Endpoint:
    """Remote peer. Equal when address and port match."""

    ip: str
    port: int
    timeout: float = field(default=config.QUERY_TIMEOUT, compare=False)

    @property
    def key(self) -> tuple:
        return (self.ip, self.port)

    def __str__(self):
        return f"{self.ip}:{self.port}"


async def resolve_endpoint(host: str, port: int, timeout: Optional[float] = None) -> Endpoint:
    """
    Resolve a hostname to an IPv4 endpoint.

    Raises:
        TransportError: The name could not be resolved
        ValueError: Invalid port or timeout
    """
    timeout = config.QUERY_TIMEOUT if timeout is None else timeout
    if timeout <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout}")
    if not 0 < int(port) < 65536:
        raise ValueError(f"Invalid port: {port}")

    loop = asyncio.get_running_loop()
    try:
        addresses = await loop.getaddrinfo(
            host, port, family=socket.AF_INET, type=socket.SOCK_DGRAM
        )
    except OSError as e:
        raise TransportError(f"Cannot resolve {host}: {e}") from e

    return Endpoint(addresses[0][4][0], int(port), timeout)


class PendingQuery:
    """One outstanding awaited response."""

    __slots__ = ('headers', 'future', 'timer')

    def __init__(self, headers: frozenset, future: asyncio.Future):
        self.headers = headers
        self.future = future
        self.timer = None

    def matches(self, buffer: bytes) -> bool:
        return not self.future.done() and buffer[0] in self.headers


class QueryProtocol(asyncio.DatagramProtocol):
    """UDP protocol handler forwarding socket events to its connection."""

    def __init__(self, connection):
        self.connection = connection
        self.transport = None
        super().__init__()

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.connection.datagram_received(data, addr)

    def error_received(self, exc):
        self.connection.error_received(exc)

    def connection_lost(self, exc):
        if exc is not None:
            self.connection.error_received(exc)


class BaseConnection:
    """
    Query/response correlation over one UDP endpoint.

    Subclasses unwrap their protocol framing in datagram_received() and
    hand payloads starting at the response header to dispatch().
    """

    TAG = 'CONN'

    def __init__(self, endpoint: Endpoint):
        self.endpoint = endpoint
        self.transport = None
        self.pending = []
        self.last_ping = -1

    @property
    def connected(self) -> bool:
        return self.transport is not None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self):
        """
        Associate the socket with the remote peer.

        Raises:
            TransportError: The endpoint could not be created
        """
        if self.transport is not None:
            raise QueryError(f"{self.endpoint} is already connected")

        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: QueryProtocol(self),
                remote_addr=self.endpoint.key,
                family=socket.AF_INET
            )
        except OSError as e:
            raise TransportError(f"Cannot connect to {self.endpoint}: {e}") from e

        self.transport = transport
        logger.debug(f"[{self.TAG}] Connected to {self.endpoint}")

    def destroy(self):
        """Cancel every pending wait and close the socket."""
        self._fail_pending(NotConnected(f"Connection to {self.endpoint} destroyed"))

        if self.transport is not None:
            self._close_transport()
            self.transport = None
            logger.debug(f"[{self.TAG}] Closed connection to {self.endpoint}")

    def _close_transport(self):
        self.transport.close()

    def _must_be_connected(self):
        if self.transport is None:
            raise NotConnected(f"Not connected to {self.endpoint}")

    # =========================================================================
    # Sending
    # =========================================================================

    def _send_datagram(self, command: bytes):
        self.transport.sendto(command)

    async def send(self, command: bytes):
        """
        Write one datagram to the peer.

        Raises:
            NotConnected: connect() has not completed
            TransportError: The socket refused the datagram
        """
        self._must_be_connected()

        log_packet(logger, self.TAG, self.endpoint, 'sent', command)
        try:
            self._send_datagram(command)
        except OSError as e:
            raise TransportError(f"Cannot send to {self.endpoint}: {e}") from e

    def _resend(self, command: bytes):
        if self.transport is None:
            return

        log_packet(logger, self.TAG, self.endpoint, 'resent', command)
        try:
            self._send_datagram(command)
        except OSError as e:
            # The original wait continues until its own deadline
            logger.debug(f"[{self.TAG}] Resend to {self.endpoint} failed: {e}")

    # =========================================================================
    # Receiving
    # =========================================================================

    def _timeout(self, timeout: Optional[float]) -> float:
        timeout = self.endpoint.timeout if timeout is None else timeout
        if timeout <= 0:
            raise ValueError(f"Timeout must be positive, got {timeout}")
        return timeout

    def _register(self, headers: Iterable[int], timeout: Optional[float]) -> PendingQuery:
        timeout = self._timeout(timeout)

        loop = asyncio.get_running_loop()
        pending = PendingQuery(frozenset(headers), loop.create_future())
        pending.timer = loop.call_later(timeout, self._expire, pending, timeout)
        self.pending.append(pending)
        return pending

    def _retire(self, pending: PendingQuery):
        pending.timer.cancel()
        if pending in self.pending:
            self.pending.remove(pending)

    def _expire(self, pending: PendingQuery, timeout: float):
        self._retire(pending)
        if not pending.future.done():
            pending.future.set_exception(
                Timeout(f"No response from {self.endpoint} within {timeout}s")
            )

    def _fail_pending(self, error: QueryError):
        for pending in list(self.pending):
            self._retire(pending)
            if not pending.future.done():
                pending.future.set_exception(error)

    async def await_response(self, headers: Iterable[int], timeout: Optional[float] = None) -> bytes:
        """
        Wait for a payload whose first byte is one of headers.

        The wait is registered before the first suspension point, so a
        caller can register several waits back to back without missing a
        payload.

        Args:
            headers: Acceptable response header bytes
            timeout: Seconds to wait, defaults to the endpoint timeout

        Returns:
            The payload, starting at the header byte

        Raises:
            NotConnected: connect() has not completed
            Timeout: Nothing matching arrived in time
            TransportError: The socket reported an error while waiting
        """
        self._must_be_connected()

        pending = self._register(headers, timeout)
        try:
            return await pending.future
        finally:
            self._retire(pending)

    async def query(self, command: bytes, headers: Iterable[int], timeout: Optional[float] = None) -> bytes:
        """
        Send command and wait for the matching response.

        If nothing arrived after half the timeout the command is sent once
        more. The wait still ends at the original timeout. last_ping is set
        to the milliseconds between the first send and the response.
        """
        timeout = self._timeout(timeout)
        loop = asyncio.get_running_loop()

        start = loop.time()
        await self.send(command)

        resend = loop.call_later(timeout / 2, self._resend, command)
        try:
            buffer = await self.await_response(headers, timeout)
        finally:
            resend.cancel()

        self.last_ping = (loop.time() - start) * 1000
        return buffer

    def dispatch(self, buffer: bytes) -> bool:
        """
        Offer a payload to the pending queries, oldest first.

        Returns:
            True when a pending query took the payload
        """
        if not buffer:
            return False

        for pending in self.pending:
            if pending.matches(buffer):
                self._retire(pending)
                pending.future.set_result(buffer)
                return True

        self._warn(f"[{self.TAG}] Unhandled response 0x{buffer[0]:02x} from {self.endpoint}")
        return False

    def datagram_received(self, data: bytes, addr: tuple):
        # Some old servers send empty datagrams
        if not data:
            return

        log_packet(logger, self.TAG, self.endpoint, 'received', data)
        self.dispatch(data)

    def error_received(self, exc: Exception):
        logger.debug(f"[{self.TAG}] Socket error for {self.endpoint}: {exc}")
        error = TransportError(f"Socket error for {self.endpoint}: {exc}")
        error.__cause__ = exc
        self._fail_pending(error)

    @staticmethod
    def _warn(message: str):
        if config.ENABLE_WARNS:
            logger.warning(message)
        else:
            logger.debug(message)
