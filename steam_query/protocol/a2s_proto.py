"""
Valve server query protocol (A2S)

Handles building requests and decoding info/players/rules responses.

Response buffers handed to the decoders start at the header byte; the
leading FF FF FF FF marker has already been stripped by the connection.
"""

import bz2
import dataclasses
import logging
import zlib
from dataclasses import dataclass
from typing import Optional

from steam_query.errors import MalformedResponse
from steam_query.utils.encoding import BufferReader

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

SIMPLE_PACKET = b'\xFF\xFF\xFF\xFF'
MULTI_PACKET = b'\xFE\xFF\xFF\xFF'

# Placeholder challenge for players/rules challenge requests
NO_CHALLENGE = b'\xFF\xFF\xFF\xFF'

# Request types (client -> server)
A2S_INFO = 0x54
A2S_PLAYER = 0x55
A2S_RULES = 0x56
A2S_SERVERQUERY_GETCHALLENGE = 0x57
A2A_PING = 0x69

# Response types (server -> client)
S2A_INFO = 0x49
S2A_INFO_GOLDSOURCE = 0x6D
S2A_PLAYER = 0x44
S2A_RULES = 0x45
S2C_CHALLENGE = 0x41
A2A_ACK = 0x6A

ANY_INFO_OR_CHALLENGE = (S2A_INFO_GOLDSOURCE, S2A_INFO, S2C_CHALLENGE)
PLAYERS_OR_CHALLENGE = (S2A_PLAYER, S2C_CHALLENGE)
RULES_OR_CHALLENGE = (S2A_RULES, S2C_CHALLENGE)

# The secondary info reply carries the other format
OTHER_INFO_HEADER = {
    S2A_INFO: S2A_INFO_GOLDSOURCE,
    S2A_INFO_GOLDSOURCE: S2A_INFO,
}

# Apps whose players/rules challenge request uses the request byte itself
# instead of A2S_SERVERQUERY_GETCHALLENGE
NO_CHALLENGE_PREFIX_APPS = frozenset({17510, 17530, 17740, 17550, 17700})

THE_SHIP_APP_ID = 2400

# Incomplete split responses kept per connection; the oldest is dropped first
MAX_SPLIT_RESPONSES = 8

SERVER_TYPES = {
    'd': 'dedicated',
    'l': 'non-dedicated',
    'p': 'proxy',
}

ENVIRONMENTS = {
    'l': 'linux',
    'w': 'windows',
    'm': 'mac',
    'o': 'mac',
}

# Extra data flags of the info response
EDF_PORT = 0x80
EDF_STEAM_ID = 0x10
EDF_SOURCE_TV = 0x40
EDF_KEYWORDS = 0x20
EDF_GAME_ID = 0x01


# =============================================================================
# Commands
# =============================================================================

def make_command(code: int, body: bytes = NO_CHALLENGE) -> bytes:
    """
    Build a request datagram.

    Args:
        code: Request type byte
        body: Bytes following the request type

    Returns:
        Complete datagram including the FF FF FF FF marker
    """
    return SIMPLE_PACKET + bytes([code]) + body


INFO_COMMAND = make_command(A2S_INFO, b'Source Engine Query\x00')
PING_COMMAND = make_command(A2A_PING, b'')


def info_command(key: Optional[bytes] = None) -> bytes:
    if key:
        return INFO_COMMAND + key
    return INFO_COMMAND


def challenge_command(code: int, app_id: Optional[int]) -> bytes:
    """
    Build the first request of a players/rules exchange.

    Most servers expect A2S_SERVERQUERY_GETCHALLENGE; the apps listed in
    NO_CHALLENGE_PREFIX_APPS take the request byte with a placeholder key.
    """
    if app_id in NO_CHALLENGE_PREFIX_APPS:
        return make_command(code)
    return make_command(A2S_SERVERQUERY_GETCHALLENGE)


def challenge_key(buffer: bytes) -> bytes:
    """Extract the challenge token (up to 4 bytes) from the tail of a response."""
    return buffer[1:][-4:]


# =============================================================================
# Decoded types
# =============================================================================

@dataclass(frozen=True)
class ServerInfo:
    """Decoded info response (current or legacy format)."""

    name: Optional[str] = None
    map: Optional[str] = None
    folder: Optional[str] = None
    game: Optional[str] = None
    app_id: Optional[int] = None
    players: Optional[int] = None
    max_players: Optional[int] = None
    bots: Optional[int] = None
    server_type: Optional[str] = None
    os: Optional[str] = None
    password: Optional[bool] = None
    vac: Optional[bool] = None
    version: Optional[str] = None
    protocol: Optional[int] = None
    address: Optional[str] = None
    port: Optional[int] = None
    steam_id: Optional[int] = None
    tv_port: Optional[int] = None
    tv_name: Optional[str] = None
    keywords: Optional[str] = None
    game_id: Optional[int] = None
    the_ship: Optional[dict] = None
    mod: Optional[dict] = None
    goldsource: bool = False
    ping: float = -1

    def merge(self, other: 'ServerInfo') -> 'ServerInfo':
        """Fill the fields this reply lacks from a secondary reply."""
        changes = {
            field.name: getattr(other, field.name)
            for field in dataclasses.fields(self)
            if getattr(self, field.name) is None and getattr(other, field.name) is not None
        }
        return dataclasses.replace(self, goldsource=True, **changes)

    def with_ping(self, ping: float) -> 'ServerInfo':
        return dataclasses.replace(self, ping=ping)


@dataclass(frozen=True)
class Player:
    index: int
    name: str
    score: int
    duration: float
    deaths: Optional[int] = None
    money: Optional[int] = None


# =============================================================================
# Decoders
# =============================================================================

def parse_info(buffer: bytes) -> ServerInfo:
    """
    Decode an info response.

    Args:
        buffer: Response starting with S2A_INFO or S2A_INFO_GOLDSOURCE

    Returns:
        ServerInfo

    Raises:
        MalformedResponse: Unknown header or truncated buffer
    """
    if not buffer:
        raise MalformedResponse('Empty info response')
    if buffer[0] == S2A_INFO:
        return _parse_source_info(BufferReader(buffer, 1))
    if buffer[0] == S2A_INFO_GOLDSOURCE:
        return _parse_goldsource_info(BufferReader(buffer, 1))
    raise MalformedResponse(f"Not an info response: 0x{buffer[0]:02x}")


def _parse_source_info(reader: BufferReader) -> ServerInfo:
    info = {
        'protocol': reader.byte(),
        'name': reader.string(),
        'map': reader.string(),
        'folder': reader.string(),
        'game': reader.string(),
        'app_id': reader.short(),
        'players': reader.byte(),
        'max_players': reader.byte(),
        'bots': reader.byte(),
        'server_type': SERVER_TYPES.get(reader.char().lower()),
        'os': ENVIRONMENTS.get(reader.char().lower()),
        'password': reader.byte() == 1,
        'vac': reader.byte() == 1,
    }

    if info['app_id'] == THE_SHIP_APP_ID:
        info['the_ship'] = {
            'mode': reader.byte(),
            'witnesses': reader.byte(),
            'duration': reader.byte(),
        }

    info['version'] = reader.string()

    if reader.remaining_length:
        edf = reader.byte()
        if edf & EDF_PORT:
            info['port'] = reader.short()
        if edf & EDF_STEAM_ID:
            info['steam_id'] = reader.longlong()
        if edf & EDF_SOURCE_TV:
            info['tv_port'] = reader.short()
            info['tv_name'] = reader.string()
        if edf & EDF_KEYWORDS:
            info['keywords'] = reader.string()
        if edf & EDF_GAME_ID:
            info['game_id'] = reader.longlong()
            # The low 24 bits hold the full app id when the short overflowed
            info['app_id'] = info['game_id'] & 0xFFFFFF

    return ServerInfo(**info)


def _parse_goldsource_info(reader: BufferReader) -> ServerInfo:
    info = {
        'address': reader.string(),
        'name': reader.string(),
        'map': reader.string(),
        'folder': reader.string(),
        'game': reader.string(),
        'players': reader.byte(),
        'max_players': reader.byte(),
        'protocol': reader.byte(),
        'server_type': SERVER_TYPES.get(reader.char().lower()),
        'os': ENVIRONMENTS.get(reader.char().lower()),
        'password': reader.byte() == 1,
        'goldsource': True,
    }

    if reader.byte() == 1:
        mod = {
            'link': reader.string(),
            'download_link': reader.string(),
        }
        reader.byte()
        mod['version'] = reader.long()
        mod['size'] = reader.long()
        mod['multiplayer_only'] = reader.byte() == 1
        mod['own_dll'] = reader.byte() == 1
        info['mod'] = mod

    info['vac'] = reader.byte() == 1
    info['bots'] = reader.byte()

    return ServerInfo(**info)


def parse_players(buffer: bytes, app_id: Optional[int] = None) -> list:
    """
    Decode a players response.

    Servers may announce more players than fit in the datagram; decoding
    stops at the end of the buffer.
    """
    reader = BufferReader(buffer, 1)
    count = reader.byte()

    players = []
    for _ in range(count):
        if not reader.remaining_length:
            break
        players.append({
            'index': reader.byte(),
            'name': reader.string(),
            'score': reader.long(),
            'duration': reader.float(),
        })

    if app_id == THE_SHIP_APP_ID and reader.remaining_length:
        for player in players:
            player['deaths'] = reader.long()
            player['money'] = reader.long()

    return [Player(**player) for player in players]


def parse_rules(buffer: bytes) -> dict:
    """Decode a rules response into a name -> value mapping."""
    reader = BufferReader(buffer, 1)
    count = reader.short()

    rules = {}
    for _ in range(count):
        if not reader.remaining_length:
            break
        name = reader.string()
        rules[name] = reader.string()

    return rules


# =============================================================================
# Split responses
# =============================================================================

class SplitPacketAssembler:
    """
    Reassembles responses split over several FE FF FF FF datagrams.

    Source framing:   id(long) total(byte) number(byte) size(short)
    Legacy framing:   id(long) number<<4|total(byte)

    At most MAX_SPLIT_RESPONSES incomplete responses are kept, so parts lost
    on the network do not accumulate.

    A set id high bit marks a bzip2 compressed response; its first part
    starts with the decompressed size and CRC32.
    """

    def __init__(self):
        self.goldsource = False
        self.parts = {}

    def add(self, datagram: bytes) -> Optional[bytes]:
        """
        Store one split datagram.

        Returns:
            The reassembled response (including the FF FF FF FF marker)
            once every part has arrived, else None
        """
        reader = BufferReader(datagram, 4)
        packet_id = reader.ulong()

        if self.goldsource:
            packed = reader.byte()
            total, number = packed & 0x0F, packed >> 4
        else:
            total = reader.byte()
            number = reader.byte()
            reader.short()

        if not total or number >= total:
            raise MalformedResponse(f"Bad split packet {number}/{total} of id {packet_id:08x}")

        parts = self.parts.get(packet_id)
        if parts is None:
            parts = self.parts[packet_id] = {}
            while len(self.parts) > MAX_SPLIT_RESPONSES:
                dropped = next(iter(self.parts))
                del self.parts[dropped]
                logger.debug(f"[SERVER] Dropped incomplete split response {dropped:08x}")
        parts[number] = reader.rest()
        if len(parts) < total:
            return None

        del self.parts[packet_id]
        payload = b''.join(parts[index] for index in range(total))
        logger.debug(f"[SERVER] Reassembled split response {packet_id:08x} from {total} parts")

        if packet_id & 0x80000000 and not self.goldsource:
            payload = self._decompress(payload)
        return payload

    @staticmethod
    def _decompress(payload: bytes) -> bytes:
        reader = BufferReader(payload)
        size = reader.ulong()
        crc = reader.ulong()
        try:
            data = bz2.decompress(payload[8:])
        except (OSError, ValueError) as e:
            raise MalformedResponse(f"Cannot decompress split response: {e}") from e

        if len(data) != size or zlib.crc32(data) != crc:
            raise MalformedResponse('Compressed split response failed its checksum')
        return data
