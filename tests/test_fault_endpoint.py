"""
Tests for FaultEndpoint.

Both roles run in-process over loopback: one endpoint plays the mirror
destination, the other plays the source that drives it.

Tests cover:
- Passive and active open (accept deadline, bounded connect retry)
- Scripted handshake outcomes
- Scripted exchange outcomes and handle correlation
- drain_until and orderly close detection
"""
import asyncio
import socket

import pytest

from mirrorfault.engine.fault_endpoint import DEFAULT_HANDLE, FaultEndpoint, corrupt_handle
from mirrorfault.exceptions import (
    ConnectTimeout,
    FrameIncomplete,
    InvalidHandle,
    ProtocolMismatch,
    Rejected,
    Timeout,
)
from mirrorfault.models import (
    ExchangeOutcome,
    HandshakeOutcome,
    RequestType,
    RetryPolicy,
    ScenarioConfig,
)

HOST = "127.0.0.1"


@pytest.fixture
def config():
    return ScenarioConfig(
        dest_port=0,
        export_size=4096,
        request_limit_secs=0.3,
        hello_timeout_sec=0.3,
        exchange_timeout_sec=1.0,
        accept_timeout_sec=2.0,
        close_timeout_sec=0.5,
        connect_deadline_sec=0.5,
        connect_backoff_sec=0.05,
    )


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((HOST, 0))
        return sock.getsockname()[1]


async def _connected_pair(config):
    dest = FaultEndpoint(config)
    accept = asyncio.create_task(dest.listen_and_accept(HOST, 0, config.accept_timeout_sec))
    await dest.listening.wait()

    source = FaultEndpoint(config)
    await source.connect_with_retry(HOST, dest.bound_port, config.retry_policy)
    await accept
    return dest, source


async def _close(*endpoints):
    for endpoint in endpoints:
        await endpoint.close()


class TestOpening:
    """Tests for listen_and_accept and connect_with_retry"""

    @pytest.mark.asyncio
    async def test_accepts_one_connection(self, config):
        dest, source = await _connected_pair(config)

        assert dest.connected
        assert source.connected
        assert source.connect_attempts == 1
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_accept_deadline(self, config):
        dest = FaultEndpoint(config)

        with pytest.raises(Timeout):
            await dest.listen_and_accept(HOST, 0, deadline=0.1)

    @pytest.mark.asyncio
    async def test_connect_retries_until_listener_appears(self, config):
        port = _free_port()
        dest = FaultEndpoint(config)

        async def late_listener():
            await asyncio.sleep(0.2)
            await dest.listen_and_accept(HOST, port, deadline=2.0)

        accept = asyncio.create_task(late_listener())
        source = FaultEndpoint(config)
        attempts = await source.connect_with_retry(HOST, port, RetryPolicy(deadline=2.0, backoff=0.05))
        await accept

        assert attempts > 1
        assert source.connected
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_connect_gives_up_only_at_deadline(self, config):
        port = _free_port()
        source = FaultEndpoint(config)
        loop = asyncio.get_running_loop()

        started = loop.time()
        with pytest.raises(ConnectTimeout) as exc_info:
            await source.connect_with_retry(HOST, port, RetryPolicy(deadline=0.3, backoff=0.05))
        elapsed = loop.time() - started

        assert elapsed >= 0.29
        assert exc_info.value.details["attempts"] >= 2


class TestHandshake:
    """Tests for perform_handshake / read_handshake"""

    @pytest.mark.asyncio
    async def test_correct_hello(self, config):
        dest, source = await _connected_pair(config)

        await dest.perform_handshake(HandshakeOutcome.CORRECT)
        hello = await source.read_handshake(expected_size=4096)

        assert hello.export_size == 4096
        assert source.export_size == 4096
        assert dest.handshake_sent.is_set()
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_explicit_export_size(self, config):
        dest, source = await _connected_pair(config)

        await dest.perform_handshake(HandshakeOutcome.CORRECT, export_size=1 << 30)
        hello = await source.read_handshake()

        assert hello.export_size == 1 << 30
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_wrong_magic(self, config):
        dest, source = await _connected_pair(config)

        await dest.perform_handshake(HandshakeOutcome.WRONG_MAGIC)
        with pytest.raises(ProtocolMismatch) as exc_info:
            await source.read_handshake()

        assert exc_info.value.details["reason"] == "bad_hello_magic"
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_wrong_size(self, config):
        dest, source = await _connected_pair(config)

        await dest.perform_handshake(HandshakeOutcome.WRONG_SIZE)
        with pytest.raises(ProtocolMismatch) as exc_info:
            await source.read_handshake(expected_size=4096)

        assert exc_info.value.details["reason"] == "size_mismatch"
        assert exc_info.value.details["remote"] == 4097
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_close_before_hello_is_rejection(self, config):
        dest, source = await _connected_pair(config)

        await dest.perform_handshake(HandshakeOutcome.CLOSE)
        with pytest.raises(Rejected):
            await source.read_handshake()

        assert not dest.handshake_sent.is_set()
        await _close(source)

    @pytest.mark.asyncio
    async def test_hang_until_peer_gives_up(self, config):
        dest, source = await _connected_pair(config)

        stall = asyncio.create_task(dest.perform_handshake(HandshakeOutcome.HANG))
        with pytest.raises(FrameIncomplete) as exc_info:
            await source.read_handshake()
        await source.close()
        await stall

        assert exc_info.value.received == 0
        assert exc_info.value.details["reason"] == "timeout"
        await _close(dest)

    @pytest.mark.asyncio
    async def test_hang_times_out_if_peer_never_gives_up(self, config):
        dest, source = await _connected_pair(config)

        with pytest.raises(Timeout):
            await dest.perform_handshake(HandshakeOutcome.HANG)
        await _close(source)


class TestExchange:
    """Tests for exchange_one_request / source request helpers"""

    @pytest.mark.asyncio
    async def test_correct_write(self, config):
        dest, source = await _connected_pair(config)

        exchange = asyncio.create_task(dest.exchange_one_request(ExchangeOutcome.CORRECT))
        reply = await source.write(0, b"12345678")
        request = await exchange

        assert reply.handle == DEFAULT_HANDLE
        assert reply.error_code == 0
        assert request.type == RequestType.WRITE
        assert request.length == 8
        assert dest.payload_bytes_dropped == 8
        assert dest.requests_seen == 1
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_correct_read_is_zero_filled(self, config):
        dest, source = await _connected_pair(config)

        exchange = asyncio.create_task(dest.exchange_one_request(ExchangeOutcome.CORRECT))
        data = await source.read(512, 16, handle=b"readhndl")
        request = await exchange

        assert data == bytes(16)
        assert request.offset == 512
        assert request.handle == b"readhndl"
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_negative_offset_reaches_peer(self, config):
        dest, source = await _connected_pair(config)

        exchange = asyncio.create_task(dest.exchange_one_request(ExchangeOutcome.CORRECT))
        await source.send_request(RequestType.READ, offset=-512, length=0)
        await source.read_response(DEFAULT_HANDLE)
        request = await exchange

        assert request.offset == -512
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_wrong_handle(self, config):
        dest, source = await _connected_pair(config)

        exchange = asyncio.create_task(dest.exchange_one_request(ExchangeOutcome.WRONG_HANDLE))
        with pytest.raises(ProtocolMismatch) as exc_info:
            await source.write(0, b"12345678")
        await exchange

        assert exc_info.value.details["reason"] == "handle_mismatch"
        assert exc_info.value.details["received"] == corrupt_handle(DEFAULT_HANDLE).hex()
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_wrong_magic(self, config):
        dest, source = await _connected_pair(config)

        exchange = asyncio.create_task(dest.exchange_one_request(ExchangeOutcome.WRONG_MAGIC))
        with pytest.raises(ProtocolMismatch) as exc_info:
            await source.write(0, b"12345678")
        await exchange

        assert exc_info.value.details["reason"] == "bad_reply_magic"
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_error_reply_is_rejection(self, config):
        dest, source = await _connected_pair(config)

        exchange = asyncio.create_task(dest.exchange_one_request(ExchangeOutcome.ERROR))
        with pytest.raises(Rejected) as exc_info:
            await source.write(0, b"12345678")
        await exchange

        assert exc_info.value.details["error_code"] != 0
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_close_instead_of_reply(self, config):
        dest, source = await _connected_pair(config)

        exchange = asyncio.create_task(dest.exchange_one_request(ExchangeOutcome.CLOSE))
        with pytest.raises(FrameIncomplete) as exc_info:
            await source.write(0, b"12345678")
        await exchange

        assert exc_info.value.peer_closed
        await _close(source)

    @pytest.mark.asyncio
    async def test_hang_outlasts_request_limit(self, config):
        dest, source = await _connected_pair(config)

        exchange = asyncio.create_task(dest.exchange_one_request(ExchangeOutcome.HANG))
        with pytest.raises(FrameIncomplete) as exc_info:
            await source.write(0, b"12345678")
        await source.close()
        await exchange

        assert exc_info.value.details["reason"] == "timeout"
        await _close(dest)

    @pytest.mark.asyncio
    async def test_bad_request_magic(self, config):
        dest, source = await _connected_pair(config)

        receive = asyncio.create_task(dest.receive_request())
        await source.send_request(RequestType.READ, magic=b"\x00\x01\x02\x03")

        with pytest.raises(ProtocolMismatch) as exc_info:
            await receive

        assert exc_info.value.details["reason"] == "bad_request_magic"
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_invalid_handle_not_sent(self, config):
        dest, source = await _connected_pair(config)

        with pytest.raises(InvalidHandle):
            await source.send_request(RequestType.READ, handle=b"short")
        await _close(dest, source)


class TestDrainAndClose:
    """Tests for drain_until and expect_orderly_close"""

    @pytest.mark.asyncio
    async def test_drain_until_entrust(self, config):
        dest, source = await _connected_pair(config)

        drain = asyncio.create_task(dest.drain_until(RequestType.ENTRUST))
        await source.write(0, b"12345678")
        await source.write(8, b"abcdefgh", handle=b"secondhd")
        await source.send_request(RequestType.ENTRUST, handle=b"entrusth")
        entrust = await drain

        assert entrust.type == RequestType.ENTRUST
        assert entrust.handle == b"entrusth"
        assert dest.requests_seen == 3
        assert dest.payload_bytes_dropped == 16
        await _close(dest, source)

    @pytest.mark.asyncio
    async def test_drain_until_early_disconnect(self, config):
        dest, source = await _connected_pair(config)

        drain = asyncio.create_task(dest.drain_until(RequestType.ENTRUST))
        await source.write(0, b"12345678")
        await source.disconnect()

        with pytest.raises(ProtocolMismatch) as exc_info:
            await drain

        assert exc_info.value.details["reason"] == "early_disconnect"
        await _close(dest)

    @pytest.mark.asyncio
    async def test_orderly_close_detected(self, config):
        dest, source = await _connected_pair(config)

        await source.disconnect()

        assert await dest.expect_orderly_close(1.0) is True
        await _close(dest)

    @pytest.mark.asyncio
    async def test_peer_that_stays_open(self, config):
        dest, source = await _connected_pair(config)

        assert await dest.expect_orderly_close(0.1) is False
        await _close(dest, source)
