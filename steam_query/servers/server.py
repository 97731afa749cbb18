"""
Game server queries

Info, players and rules queries against one game server over its own UDP
socket.

Communication Flow (info):
1. Client sends A2S_INFO (with the last challenge token, if any)
2. Server answers with S2A_INFO, or with S2C_CHALLENGE carrying a token
3. On a challenge the client resends A2S_INFO with the token appended
4. Some servers follow S2A_INFO with a legacy S2A_INFO_GOLDSOURCE reply

Communication Flow (players / rules):
1. Client sends a challenge request
2. Server answers with S2C_CHALLENGE, or directly with the data
3. Client sends A2S_PLAYER / A2S_RULES with the token appended
4. Server answers with S2A_PLAYER / S2A_RULES
"""

import logging
from dataclasses import dataclass
from typing import Optional

from steam_query.config import config
from steam_query.errors import (
    MalformedResponse,
    NotConnected,
    QueryError,
    UnexpectedChallenge,
    WrongServerResponse,
)
from steam_query.protocol import a2s_proto
from steam_query.protocol.a2s_proto import ServerInfo, SplitPacketAssembler
from steam_query.servers.connection import BaseConnection, resolve_endpoint

DEFAULT_PORT = 27015

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChallengeState:
    """What the connect() probe learned about the server."""

    info_challenge: bool
    legacy_info: bool


# =============================================================================
# Connection
# =============================================================================

class ServerConnection(BaseConnection):
    """Connection to one game server, unwrapping simple and split packets."""

    TAG = 'SERVER'

    def __init__(self, endpoint):
        super().__init__(endpoint)
        self.assembler = SplitPacketAssembler()

    def datagram_received(self, data: bytes, addr: tuple):
        if not data:
            return

        if data[:4] == a2s_proto.SIMPLE_PACKET:
            super().datagram_received(data[4:], addr)
        elif data[:4] == a2s_proto.MULTI_PACKET:
            try:
                response = self.assembler.add(data)
            except MalformedResponse as e:
                logger.warning(f"[{self.TAG}] Dropped split response from {self.endpoint}: {e}")
                return
            if response is not None:
                self.datagram_received(response, addr)
        else:
            self._warn(f"[{self.TAG}] Cannot handle packet from {self.endpoint}: {data[:8].hex()}")


# =============================================================================
# Server
# =============================================================================

class Server:
    """
    Repeated queries against one game server.

    Example:
        >>> server = await Server.init('127.0.0.1', 27015)
        >>> info = await server.get_info()
        >>> players = await server.get_players()
        >>> server.destroy()
    """

    def __init__(self, ip: str, port: int = DEFAULT_PORT, timeout: Optional[float] = None):
        self.ip = ip
        self.port = port
        self.timeout = config.QUERY_TIMEOUT if timeout is None else timeout

        self.connection: Optional[ServerConnection] = None
        self.challenge_state: Optional[ChallengeState] = None
        self.app_id: Optional[int] = None

        self._info_key: Optional[bytes] = None
        self._connecting = False

    @classmethod
    async def init(cls, ip: str, port: int = DEFAULT_PORT, timeout: Optional[float] = None) -> 'Server':
        server = cls(ip, port, timeout)
        await server.connect()
        return server

    @property
    def last_ping(self) -> float:
        return self.connection.last_ping if self.connection else -1

    @property
    def legacy_timeout(self) -> float:
        return min(config.LEGACY_INFO_TIMEOUT, self.timeout / 2)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self):
        """
        Open the socket and probe the server.

        The probe is a bare info exchange that records whether the server
        demands a challenge and whether it sends a legacy secondary reply.

        Raises:
            QueryError: Already connected or connecting, or the probe failed
        """
        if self.connection is not None or self._connecting:
            raise QueryError(f"Server {self.ip}:{self.port}: already connected.")

        self._connecting = True
        try:
            endpoint = await resolve_endpoint(self.ip, self.port, self.timeout)
            connection = ServerConnection(endpoint)
            await connection.connect()

            try:
                info, challenged, legacy = await self._info_exchange(connection)
            except BaseException:
                connection.destroy()
                raise
        finally:
            self._connecting = False

        self.connection = connection
        self.challenge_state = ChallengeState(info_challenge=challenged, legacy_info=legacy)
        self.app_id = info.app_id
        # Servers that only speak the legacy format also split the legacy way
        connection.assembler.goldsource = info.goldsource and not legacy

        logger.info(
            f"[SERVER] Connected to {endpoint}: app={self.app_id}, "
            f"challenge={challenged}, legacy={legacy}"
        )

    def destroy(self):
        if self.connection is None:
            raise NotConnected(f"Server {self.ip}:{self.port}: not connected.")

        self.connection.destroy()
        self.connection = None

    def _must_be_connected(self) -> ServerConnection:
        if self.connection is None:
            raise NotConnected(f"Server {self.ip}:{self.port}: not connected.")
        return self.connection

    # =========================================================================
    # Info
    # =========================================================================

    async def _info_exchange(self, connection: ServerConnection):
        """
        Run one logical info query.

        Returns:
            (info, challenged, legacy) where challenged tells whether a
            challenge was answered and legacy whether a secondary reply
            was merged
        """
        state = self.challenge_state
        key = self._info_key
        challenged = False

        while True:
            buffer = await connection.query(
                a2s_proto.info_command(key), a2s_proto.ANY_INFO_OR_CHALLENGE
            )
            # A resent request is answered twice; skip copies of the token already answered
            while (
                challenged
                and buffer[0] == a2s_proto.S2C_CHALLENGE
                and a2s_proto.challenge_key(buffer) == key
            ):
                logger.debug(f"[SERVER] Duplicate challenge from {connection.endpoint}")
                buffer = await connection.await_response(a2s_proto.ANY_INFO_OR_CHALLENGE)

            if buffer[0] != a2s_proto.S2C_CHALLENGE:
                break

            if challenged:
                raise UnexpectedChallenge(f"{connection.endpoint} sent a second challenge with a new token")
            if state is not None and not state.info_challenge:
                raise UnexpectedChallenge(
                    f"{connection.endpoint} demanded a challenge it did not need when connecting"
                )

            challenged = True
            key = a2s_proto.challenge_key(buffer)
            logger.debug(f"[SERVER] Challenge from {connection.endpoint}: {key.hex()}")

        ping = connection.last_ping
        info = a2s_proto.parse_info(buffer)
        if key:
            self._info_key = key

        legacy = False
        if state is None or state.legacy_info:
            other = a2s_proto.OTHER_INFO_HEADER[buffer[0]]
            try:
                other_buffer = await connection.await_response([other], self.legacy_timeout)
                info = info.merge(a2s_proto.parse_info(other_buffer))
                legacy = True
            except QueryError as e:
                logger.debug(f"[SERVER] No secondary info reply from {connection.endpoint}: {e}")

        return info.with_ping(ping), challenged, legacy

    async def get_info(self) -> ServerInfo:
        connection = self._must_be_connected()
        info, _, _ = await self._info_exchange(connection)
        return info

    # =========================================================================
    # Players / Rules
    # =========================================================================

    async def _challenge_query(self, code: int, headers: tuple) -> bytes:
        """
        Run a players/rules exchange, returning the data response.

        Args:
            code: Request type byte
            headers: Data response header followed by S2C_CHALLENGE

        Raises:
            WrongServerResponse: The data response repeats the first answer
        """
        connection = self._must_be_connected()
        header = headers[0]

        first = await connection.query(
            a2s_proto.challenge_command(code, self.app_id), headers
        )
        if first[0] == header and len(first) > 5:
            return first

        key = a2s_proto.challenge_key(first)
        buffer = await connection.query(a2s_proto.make_command(code, key), (header,))
        if buffer == first:
            raise WrongServerResponse(f"{connection.endpoint} repeated its previous response")
        return buffer

    async def get_players(self) -> list:
        buffer = await self._challenge_query(a2s_proto.A2S_PLAYER, a2s_proto.PLAYERS_OR_CHALLENGE)
        return a2s_proto.parse_players(buffer, self.app_id)

    async def get_rules(self) -> dict:
        buffer = await self._challenge_query(a2s_proto.A2S_RULES, a2s_proto.RULES_OR_CHALLENGE)
        return a2s_proto.parse_rules(buffer)

    # =========================================================================
    # Ping
    # =========================================================================

    async def get_ping(self) -> float:
        """
        Measure latency with the deprecated A2A_PING query.

        Returns:
            Round trip in milliseconds, or -1 when the server did not answer
        """
        connection = self._must_be_connected()

        try:
            await connection.query(a2s_proto.PING_COMMAND, (a2s_proto.A2A_ACK,))
        except QueryError as e:
            logger.debug(f"[SERVER] Ping to {connection.endpoint} failed: {e}")
            return -1
        return connection.last_ping


# =============================================================================
# One-shot helpers
# =============================================================================

async def query_info(ip: str, port: int = DEFAULT_PORT, timeout: Optional[float] = None) -> ServerInfo:
    """Connect, run one info exchange and disconnect."""
    server = Server(ip, port, timeout)
    endpoint = await resolve_endpoint(ip, port, server.timeout)
    connection = ServerConnection(endpoint)
    await connection.connect()
    try:
        info, _, _ = await server._info_exchange(connection)
    finally:
        connection.destroy()
    return info


async def query_players(ip: str, port: int = DEFAULT_PORT, timeout: Optional[float] = None) -> list:
    server = await Server.init(ip, port, timeout)
    try:
        return await server.get_players()
    finally:
        server.destroy()


async def query_rules(ip: str, port: int = DEFAULT_PORT, timeout: Optional[float] = None) -> dict:
    server = await Server.init(ip, port, timeout)
    try:
        return await server.get_rules()
    finally:
        server.destroy()


async def query_ping(ip: str, port: int = DEFAULT_PORT, timeout: Optional[float] = None) -> float:
    server = await Server.init(ip, port, timeout)
    try:
        return await server.get_ping()
    finally:
        server.destroy()
