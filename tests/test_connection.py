"""
Tests for the query/response correlation engine.

Covers:
- Lifecycle: queries before connect / after destroy
- Matching: header filtering, first registered wins, empty datagrams
- Timeouts: deadline, single resend at half the timeout
- Failure mode: resend failures, socket errors, destroy teardown
"""

import asyncio

import pytest

from steam_query.errors import NotConnected, Timeout, TransportError
from steam_query.servers.connection import BaseConnection, Endpoint


async def connect_to(peer, timeout=1.0) -> BaseConnection:
    connection = BaseConnection(Endpoint('127.0.0.1', peer.port, timeout))
    await connection.connect()
    return connection


class TestEndpoint:

    def test_equality_ignores_timeout(self):
        assert Endpoint('10.0.0.1', 27015, 1.0) == Endpoint('10.0.0.1', 27015, 5.0)
        assert Endpoint('10.0.0.1', 27015) != Endpoint('10.0.0.1', 27016)
        assert hash(Endpoint('10.0.0.1', 27015, 1.0)) == hash(Endpoint('10.0.0.1', 27015, 2.0))

    def test_str(self):
        assert str(Endpoint('10.0.0.1', 27015)) == '10.0.0.1:27015'


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_operations_before_connect_raise_not_connected(self):
        connection = BaseConnection(Endpoint('127.0.0.1', 27015, 1.0))

        with pytest.raises(NotConnected):
            await connection.send(b'\x54')
        with pytest.raises(NotConnected):
            await connection.await_response([0x49])
        with pytest.raises(NotConnected):
            await connection.query(b'\x54', [0x49])

    @pytest.mark.asyncio
    async def test_operations_after_destroy_raise_not_connected(self, peers):
        peer = await peers(lambda data: [])
        connection = await connect_to(peer)
        connection.destroy()

        assert not connection.connected
        with pytest.raises(NotConnected):
            await connection.query(b'\x54', [0x49])

        # Destroying twice is harmless
        connection.destroy()

    @pytest.mark.asyncio
    async def test_non_positive_timeout_rejected(self, peers):
        peer = await peers(lambda data: [])
        connection = await connect_to(peer)
        try:
            with pytest.raises(ValueError):
                await connection.await_response([0x49], 0)
            with pytest.raises(ValueError):
                await connection.query(b'\x54', [0x49], -1)
            assert peer.received == []
        finally:
            connection.destroy()


class TestMatching:

    @pytest.mark.asyncio
    async def test_query_returns_matching_response(self, peers):
        peer = await peers(lambda data: [b'\x49hello'])
        connection = await connect_to(peer)
        try:
            buffer = await connection.query(b'\x54', [0x49])

            assert buffer == b'\x49hello'
            assert peer.received == [b'\x54']
            assert connection.last_ping >= 0
            assert connection.pending == []
        finally:
            connection.destroy()

    @pytest.mark.asyncio
    async def test_non_matching_header_is_ignored(self, peers):
        peer = await peers(lambda data: [b'\x44other', (0.05, b'\x49wanted')])
        connection = await connect_to(peer)
        try:
            assert await connection.query(b'\x54', [0x49]) == b'\x49wanted'
        finally:
            connection.destroy()

    @pytest.mark.asyncio
    async def test_zero_length_datagram_never_satisfies(self, peers):
        peer = await peers(lambda data: [b'', (0.05, b'\x49ok')])
        connection = await connect_to(peer)
        try:
            assert await connection.query(b'\x54', [0x49]) == b'\x49ok'

            waiter = asyncio.ensure_future(connection.await_response([0x49], 0.5))
            await asyncio.sleep(0)

            connection.datagram_received(b'', ('127.0.0.1', peer.port))
            assert connection.dispatch(b'') is False
            await asyncio.sleep(0.01)
            assert not waiter.done()

            connection.dispatch(b'\x49late')
            assert await waiter == b'\x49late'
        finally:
            connection.destroy()

    @pytest.mark.asyncio
    async def test_first_registered_wins(self, peers):
        peer = await peers(lambda data: [])
        connection = await connect_to(peer)
        try:
            first = asyncio.ensure_future(connection.await_response([0x49, 0x41]))
            second = asyncio.ensure_future(connection.await_response([0x49]))
            await asyncio.sleep(0)
            assert len(connection.pending) == 2

            assert connection.dispatch(b'\x49one') is True
            await asyncio.sleep(0)
            assert first.done() and not second.done()
            assert first.result() == b'\x49one'

            connection.dispatch(b'\x49two')
            assert await second == b'\x49two'
            assert connection.pending == []
        finally:
            connection.destroy()

    @pytest.mark.asyncio
    async def test_one_datagram_satisfies_one_query(self, peers):
        peer = await peers(lambda data: [])
        connection = await connect_to(peer)
        try:
            waiters = [
                asyncio.ensure_future(connection.await_response([0x6D], 0.2)),
                asyncio.ensure_future(connection.await_response([0x49], 0.2)),
            ]
            await asyncio.sleep(0)

            connection.dispatch(b'\x49current')
            results = await asyncio.gather(*waiters, return_exceptions=True)

            assert isinstance(results[0], Timeout)
            assert results[1] == b'\x49current'
        finally:
            connection.destroy()


class TestTimeouts:

    @pytest.mark.asyncio
    async def test_timeout_after_exactly_one_resend(self, peers):
        peer = await peers(lambda data: [])
        connection = await connect_to(peer, timeout=0.4)
        loop = asyncio.get_running_loop()
        try:
            start = loop.time()
            with pytest.raises(Timeout):
                await connection.query(b'\x54query', [0x49])
            elapsed = loop.time() - start

            await asyncio.sleep(0.1)

            assert elapsed >= 0.39
            assert peer.received == [b'\x54query', b'\x54query']
            resend_delay = peer.times[1] - peer.times[0]
            assert 0.15 <= resend_delay <= 0.35
            assert connection.pending == []
        finally:
            connection.destroy()

    @pytest.mark.asyncio
    async def test_no_resend_when_answered_in_time(self, peers):
        peer = await peers(lambda data: [b'\x49fast'])
        connection = await connect_to(peer, timeout=0.2)
        try:
            await connection.query(b'\x54', [0x49])
            await asyncio.sleep(0.25)

            assert len(peer.received) == 1
        finally:
            connection.destroy()

    @pytest.mark.asyncio
    async def test_resend_failure_is_swallowed(self, peers):
        peer = await peers(lambda data: [(0.3, b'\x49late')])
        connection = await connect_to(peer, timeout=0.5)

        sent = []
        original = connection._send_datagram

        def flaky_send(command):
            sent.append(command)
            if len(sent) > 1:
                raise OSError('Network is unreachable')
            original(command)

        connection._send_datagram = flaky_send
        try:
            assert await connection.query(b'\x54', [0x49]) == b'\x49late'
            assert len(sent) == 2
        finally:
            connection.destroy()

    @pytest.mark.asyncio
    async def test_first_send_failure_raises_transport_error(self, peers):
        peer = await peers(lambda data: [])
        connection = await connect_to(peer)

        def broken_send(command):
            raise OSError('Network is unreachable')

        connection._send_datagram = broken_send
        try:
            with pytest.raises(TransportError):
                await connection.query(b'\x54', [0x49])
            assert connection.pending == []
        finally:
            connection.destroy()


class TestTeardown:

    @pytest.mark.asyncio
    async def test_destroy_fails_pending_queries(self, peers):
        peer = await peers(lambda data: [])
        connection = await connect_to(peer, timeout=5.0)

        task = asyncio.ensure_future(connection.query(b'\x54', [0x49]))
        await asyncio.sleep(0.01)
        assert len(connection.pending) == 1

        connection.destroy()

        with pytest.raises(NotConnected):
            await task
        assert connection.pending == []

    @pytest.mark.asyncio
    async def test_socket_error_fails_pending_with_transport_error(self, peers):
        peer = await peers(lambda data: [])
        connection = await connect_to(peer)
        try:
            waiter = asyncio.ensure_future(connection.await_response([0x49]))
            await asyncio.sleep(0)

            connection.error_received(ConnectionRefusedError(111, 'Connection refused'))

            with pytest.raises(TransportError):
                await waiter
            assert connection.pending == []
        finally:
            connection.destroy()

    @pytest.mark.asyncio
    async def test_cancelled_wait_is_deregistered(self, peers):
        peer = await peers(lambda data: [])
        connection = await connect_to(peer)
        try:
            waiter = asyncio.ensure_future(connection.await_response([0x49]))
            await asyncio.sleep(0)
            waiter.cancel()

            with pytest.raises(asyncio.CancelledError):
                await waiter
            assert connection.pending == []
        finally:
            connection.destroy()
