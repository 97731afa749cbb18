"""
Master server queries

Pages through the master server list. Every master session shares one
process-wide UDP socket; responses are routed to the session registered
for the sender address.
"""

import asyncio
import logging
import socket
from typing import Callable, Optional, Union

from steam_query.config import config
from steam_query.errors import QueryError, TransportError
from steam_query.protocol import a2s_proto, master_proto
from steam_query.protocol.master_proto import ZERO_IP, Filter
from steam_query.servers.connection import BaseConnection, QueryProtocol, resolve_endpoint

logger = logging.getLogger(__name__)


# =============================================================================
# Shared socket
# =============================================================================

class SharedMasterSocket:
    """
    Reference counted UDP socket shared by every master session.

    The socket opens with the first acquire() and closes when the last
    session is released. Sessions are keyed by master address and port.
    """

    def __init__(self):
        self.transport = None
        self.connections = {}
        self._opening = None

    def __len__(self):
        return len(self.connections)

    async def acquire(self, connection: 'MasterServerConnection'):
        """
        Register a session and return the shared transport.

        Raises:
            QueryError: Another session is already talking to that master
            TransportError: The socket could not be opened
        """
        key = connection.endpoint.key
        if key in self.connections:
            raise QueryError(f"A master session for {connection.endpoint} is already active")

        self.connections[key] = connection
        try:
            if self.transport is None:
                if self._opening is None:
                    self._opening = asyncio.ensure_future(self._open())
                await asyncio.shield(self._opening)
        except BaseException:
            self.release(connection)
            raise

        logger.debug(f"[MASTER] Session {connection.endpoint} acquired socket ({len(self)} active)")
        return self.transport

    async def _open(self):
        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: QueryProtocol(self),
                local_addr=('0.0.0.0', 0),
                family=socket.AF_INET
            )
        except OSError as e:
            raise TransportError(f"Cannot open master socket: {e}") from e
        finally:
            self._opening = None

        if not self.connections:
            transport.close()
            return
        self.transport = transport
        logger.debug("[MASTER] Shared socket opened")

    def release(self, connection: 'MasterServerConnection'):
        key = connection.endpoint.key
        if self.connections.get(key) is connection:
            del self.connections[key]

        if not self.connections and self.transport is not None:
            self.transport.close()
            self.transport = None
            logger.debug("[MASTER] Shared socket closed")

    def datagram_received(self, data: bytes, addr: tuple):
        if not data:
            return

        connection = self.connections.get((addr[0], addr[1]))
        if connection is None:
            logger.debug(f"[MASTER] Datagram from unknown address {addr[0]}:{addr[1]}")
            return
        connection.datagram_received(data, addr)

    def error_received(self, exc: Exception):
        # The failing peer cannot be told apart on an unconnected socket
        for connection in list(self.connections.values()):
            connection.error_received(exc)


shared_socket = SharedMasterSocket()


# =============================================================================
# Connection
# =============================================================================

class MasterServerConnection(BaseConnection):
    """Session with one master server over the shared socket."""

    TAG = 'MASTER'

    def __init__(self, endpoint, shared: SharedMasterSocket = shared_socket):
        super().__init__(endpoint)
        self.shared = shared

    async def connect(self):
        if self.transport is not None:
            raise QueryError(f"{self.endpoint} is already connected")
        self.transport = await self.shared.acquire(self)

    def _close_transport(self):
        self.shared.release(self)

    def _send_datagram(self, command: bytes):
        self.transport.sendto(command, self.endpoint.key)

    def datagram_received(self, data: bytes, addr: tuple):
        if data[:4] != a2s_proto.SIMPLE_PACKET:
            self._warn(f"[{self.TAG}] Cannot handle packet from {self.endpoint}: {data[:8].hex()}")
            return
        super().datagram_received(data[4:], addr)


# =============================================================================
# Pagination
# =============================================================================

async def query_master_server(
    filter: Union[str, Filter] = '',
    region: Union[str, int] = 'OTHER',
    quantity: Optional[int] = None,
    timeout: Optional[float] = None,
    ip: Optional[str] = None,
    port: Optional[int] = None,
    on_page: Optional[Callable[[list], None]] = None,
) -> list:
    """
    Collect game server addresses from a master server.

    Pages are requested until quantity addresses were collected or the
    master returned the 0.0.0.0:0 end marker. The result may exceed
    quantity by up to one page.

    Only one session per master address may run at a time; concurrent
    calls against the same master (for example several filters under
    asyncio.gather) must be awaited one after another instead.

    Args:
        filter: Filter string or Filter builder
        region: Region name from master_proto.REGIONS or its code
        quantity: Number of addresses wanted
        timeout: Seconds per page request
        ip: Master server host, defaults to config.MASTER_HOST
        port: Master server port, defaults to config.MASTER_PORT
        on_page: Called with the new addresses of every page

    Returns:
        List of 'ip:port' strings

    Raises:
        MalformedPage: A page could not be split into entries
        QueryError: A session with the same master is already running
        Timeout: A page request went unanswered
    """
    region = master_proto.region_code(region)
    quantity = config.MASTER_QUANTITY if quantity is None else quantity
    endpoint = await resolve_endpoint(
        ip or config.MASTER_HOST, port or config.MASTER_PORT, timeout
    )

    connection = MasterServerConnection(endpoint)
    await connection.connect()

    servers = []
    last = ZERO_IP
    try:
        while True:
            command = master_proto.build_request(region, str(filter), last)
            buffer = await connection.query(command, (master_proto.M2A_SERVER_BATCH,))
            page = master_proto.parse_server_list(buffer)

            # Some masters repeat the cursor as the first entry
            if page and last != ZERO_IP and page[0] == last:
                page = page[1:]
            if not page:
                break

            last = page[-1]
            if last == ZERO_IP:
                page = page[:-1]

            logger.debug(f"[MASTER] {endpoint} returned {len(page)} servers")
            if on_page:
                on_page(page)
            servers.extend(page)

            if last == ZERO_IP or len(servers) >= quantity:
                break
    finally:
        connection.destroy()

    logger.info(f"[MASTER] Collected {len(servers)} servers from {endpoint}")
    return servers
