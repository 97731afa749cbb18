"""
Byte encoding utilities for the Valve query protocols

All multi-byte integers are little endian except the port of a master
server entry, which is big endian.
"""

import struct

from steam_query.errors import MalformedResponse


class BufferReader:
    """
    Sequential reader over a response buffer.

    Every read advances the offset. Reading past the end of the buffer
    raises MalformedResponse.

    Example:
        >>> reader = BufferReader(b'\\x49\\x11map\\x00', 1)
        >>> reader.byte(), reader.string()
        (17, 'map')
    """

    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.offset = offset

    @property
    def remaining_length(self) -> int:
        return len(self.data) - self.offset

    def _unpack(self, fmt: str):
        try:
            value = struct.unpack_from(fmt, self.data, self.offset)
        except struct.error as e:
            raise MalformedResponse(
                f"Cannot read {fmt!r} at offset {self.offset} of {len(self.data)} bytes"
            ) from e
        self.offset += struct.calcsize(fmt)
        return value[0] if len(value) == 1 else value

    def byte(self) -> int:
        return self._unpack('<B')

    def short(self) -> int:
        return self._unpack('<H')

    def long(self) -> int:
        return self._unpack('<l')

    def ulong(self) -> int:
        return self._unpack('<L')

    def longlong(self) -> int:
        return self._unpack('<Q')

    def float(self) -> float:
        return self._unpack('<f')

    def char(self) -> str:
        return chr(self.byte())

    def string(self, encoding: str = 'utf-8') -> str:
        """Read a null-terminated string."""
        end = self.data.find(b'\x00', self.offset)
        if end == -1:
            raise MalformedResponse(f"Unterminated string at offset {self.offset}")

        value = self.data[self.offset:end].decode(encoding, errors='replace')
        self.offset = end + 1
        return value

    def address(self) -> str:
        """Read a 4 byte IPv4 address followed by a big endian port."""
        octets = self._unpack('4B')
        port = self._unpack('>H')
        return '%d.%d.%d.%d:%d' % (*octets, port)

    def rest(self) -> bytes:
        value = self.data[self.offset:]
        self.offset = len(self.data)
        return value


class BufferWriter:
    """
    Builder for request datagrams.

    Example:
        >>> BufferWriter().byte(0x31, 0xFF).string('0.0.0.0:0').end()
        b'1\\xff0.0.0.0:0\\x00'
    """

    def __init__(self):
        self.buffer = bytearray()

    def byte(self, *values: int) -> 'BufferWriter':
        self.buffer.extend(values)
        return self

    def long(self, value: int) -> 'BufferWriter':
        self.buffer.extend(struct.pack('<l', value))
        return self

    def string(self, value: str, encoding: str = 'utf-8') -> 'BufferWriter':
        """Append a null-terminated string."""
        self.buffer.extend(value.encode(encoding))
        self.buffer.append(0x00)
        return self

    def end(self) -> bytes:
        return bytes(self.buffer)
