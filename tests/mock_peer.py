"""
Mock UDP peers for the query tests

A MockPeer listens on 127.0.0.1 and answers every datagram through a
handler callable returning a list of replies. A reply is either bytes,
sent immediately, or a (delay, bytes) tuple sent after delay seconds.
"""

import asyncio
import struct

SIMPLE = b'\xFF\xFF\xFF\xFF'
TOKEN = b'\x0A\x0B\x0C\x0D'


class MockPeer(asyncio.DatagramProtocol):

    def __init__(self, handler):
        self.handler = handler
        self.transport = None
        self.received = []
        self.times = []
        super().__init__()

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        loop = asyncio.get_running_loop()
        self.received.append(data)
        self.times.append(loop.time())

        for reply in self.handler(data) or []:
            if isinstance(reply, tuple):
                delay, payload = reply
                loop.call_later(delay, self._send, payload, addr)
            else:
                self._send(reply, addr)

    def _send(self, payload, addr):
        if not self.transport.is_closing():
            self.transport.sendto(payload, addr)

    @property
    def port(self) -> int:
        return self.transport.get_extra_info('sockname')[1]

    def close(self):
        self.transport.close()


async def start_mock_peer(handler) -> MockPeer:
    loop = asyncio.get_running_loop()
    _, peer = await loop.create_datagram_endpoint(
        lambda: MockPeer(handler),
        local_addr=('127.0.0.1', 0)
    )
    return peer


# =============================================================================
# Response builders
# =============================================================================

def cstring(value: str) -> bytes:
    return value.encode('utf-8') + b'\x00'


def source_info(name='Test Server', map='de_dust2', app_id=240, players=3,
                max_players=24, bots=1, edf=b'', version='1.0.0.0') -> bytes:
    return (
        SIMPLE + b'\x49' + bytes([17])
        + cstring(name) + cstring(map) + cstring('cstrike') + cstring('Counter-Strike: Source')
        + struct.pack('<HBBB', app_id, players, max_players, bots)
        + b'dl' + bytes([0, 1])
        + cstring(version) + edf
    )


def goldsource_info(address='127.0.0.1:27015', name='Test Server', mod=False) -> bytes:
    body = (
        SIMPLE + b'\x6D'
        + cstring(address) + cstring(name) + cstring('crossfire') + cstring('valve')
        + cstring('Half-Life')
        + bytes([2, 16, 47]) + b'DW' + bytes([1])
    )
    if mod:
        body += (
            bytes([1]) + cstring('http://mod.example') + cstring('http://mod.example/dl')
            + b'\x00' + struct.pack('<ll', 3, 1024) + bytes([1, 0])
        )
    else:
        body += bytes([0])
    return body + bytes([1, 0])


def challenge(token: bytes = TOKEN) -> bytes:
    return SIMPLE + b'\x41' + token


def players_response(players=(('alice', 10, 61.5), ('bob', -2, 5.0))) -> bytes:
    body = SIMPLE + b'\x44' + bytes([len(players)])
    for index, (name, score, duration) in enumerate(players):
        body += bytes([index]) + cstring(name) + struct.pack('<lf', score, duration)
    return body


def rules_response(rules=(('mp_timelimit', '30'), ('sv_gravity', '800'))) -> bytes:
    body = SIMPLE + b'\x45' + struct.pack('<H', len(rules))
    for name, value in rules:
        body += cstring(name) + cstring(value)
    return body


def split_response(payload: bytes, parts: int, packet_id: int = 0x1234) -> list:
    size = -(-len(payload) // parts)
    chunks = [payload[i:i + size] for i in range(0, len(payload), size)]
    return [
        b'\xFE\xFF\xFF\xFF' + struct.pack('<LBBH', packet_id, len(chunks), number, 1248) + chunk
        for number, chunk in enumerate(chunks)
    ]


def master_page(*addresses: str) -> bytes:
    body = SIMPLE + b'\x66\x0A'
    for address in addresses:
        ip, port = address.split(':')
        body += bytes(int(octet) for octet in ip.split('.')) + struct.pack('>H', int(port))
    return body
