"""
Valve master server query protocol

Request:  0x31 region cursor\\0 filter\\0
Response: FF FF FF FF 66 0A followed by 6 byte entries (IPv4 + big endian port)

The cursor is the last address of the previous page; 0.0.0.0:0 starts the
list and, returned as an entry, ends it.
"""

from typing import Union

from steam_query.errors import MalformedPage
from steam_query.utils.encoding import BufferReader, BufferWriter

A2M_GET_SERVERS_BATCH2 = 0x31
M2A_SERVER_BATCH = 0x66

ZERO_IP = '0.0.0.0:0'
ENTRY_SIZE = 6

REGIONS = {
    'US_EAST': 0x00,
    'US_WEST': 0x01,
    'SOUTH_AMERICA': 0x02,
    'EUROPE': 0x03,
    'ASIA': 0x04,
    'AUSTRALIA': 0x05,
    'MIDDLE_EAST': 0x06,
    'AFRICA': 0x07,
    'OTHER': 0xFF,
}


def region_code(region: Union[str, int]) -> int:
    """
    Resolve a region name or code.

    Raises:
        ValueError: Unknown region
    """
    if isinstance(region, str):
        try:
            return REGIONS[region.upper()]
        except KeyError:
            raise ValueError(f"Unknown region: {region}") from None
    if region not in REGIONS.values():
        raise ValueError(f"Unknown region code: {region}")
    return region


def build_request(region: int, filter: str, last: str) -> bytes:
    return (
        BufferWriter()
        .byte(A2M_GET_SERVERS_BATCH2, region)
        .string(last)
        .string(filter)
        .end()
    )


def parse_server_list(buffer: bytes) -> list:
    """
    Decode one page of addresses.

    Args:
        buffer: Response starting with M2A_SERVER_BATCH 0x0A

    Returns:
        List of 'ip:port' strings in page order

    Raises:
        MalformedPage: The entries do not divide into 6 byte strides
    """
    reader = BufferReader(buffer, 2)
    amount, extra = divmod(reader.remaining_length, ENTRY_SIZE)
    if extra or reader.remaining_length < 0:
        raise MalformedPage(f"Invalid server list of {len(buffer) - 2} bytes")

    return [reader.address() for _ in range(amount)]


class Filter:
    """
    Builder for master server filter strings.

    Example:
        >>> str(Filter().add('gamedir', 'cstrike').flag('secure').nor(Filter().add('map', 'de_dust')))
        '\\\\gamedir\\\\cstrike\\\\secure\\\\1\\\\nor\\\\1\\\\map\\\\de_dust'
    """

    def __init__(self):
        self.parts = []

    def __len__(self):
        return len(self.parts)

    def __str__(self):
        return ''.join(f'\\{key}\\{value}' for key, value in self.parts)

    def add(self, key: str, value) -> 'Filter':
        self.parts.append((key, value))
        return self

    def flag(self, key: str, enabled: bool = True) -> 'Filter':
        """Boolean filters such as secure, dedicated, empty or full."""
        return self.add(key, 1 if enabled else 0)

    def nor(self, other: 'Filter') -> 'Filter':
        """Servers matching none of the conditions in other."""
        return self._group('nor', other)

    def nand(self, other: 'Filter') -> 'Filter':
        """Servers not matching all of the conditions in other."""
        return self._group('nand', other)

    def _group(self, key: str, other: 'Filter') -> 'Filter':
        self.parts.append((key, len(other)))
        self.parts.extend(other.parts)
        return self
