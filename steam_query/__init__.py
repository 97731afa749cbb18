"""
steam_query - asyncio client for the Valve server and master server query protocols
"""

from steam_query.errors import (
    MalformedPage,
    MalformedResponse,
    NotConnected,
    QueryError,
    Timeout,
    TransportError,
    UnexpectedChallenge,
    WrongServerResponse,
)
from steam_query.protocol.a2s_proto import Player, ServerInfo
from steam_query.protocol.master_proto import REGIONS, ZERO_IP, Filter
from steam_query.servers.master_server import query_master_server
from steam_query.servers.server import (
    ChallengeState,
    Server,
    query_info,
    query_ping,
    query_players,
    query_rules,
)
from steam_query.utils.debug import disable_debug, enable_debug, setup_logging

__version__ = "1.0.0"

__all__ = [
    'ChallengeState',
    'Filter',
    'MalformedPage',
    'MalformedResponse',
    'NotConnected',
    'Player',
    'QueryError',
    'REGIONS',
    'Server',
    'ServerInfo',
    'Timeout',
    'TransportError',
    'UnexpectedChallenge',
    'WrongServerResponse',
    'ZERO_IP',
    'disable_debug',
    'enable_debug',
    'query_info',
    'query_master_server',
    'query_ping',
    'query_players',
    'query_rules',
    'setup_logging',
]
