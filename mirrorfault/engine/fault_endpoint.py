"""
Fault Endpoint - scripted peer for the mirroring protocol.

The endpoint plays either side of one connection:

Destination role (what the process under test mirrors to):
    listen_and_accept -> perform_handshake -> exchange_one_request / drain_until
    -> expect_orderly_close

Source role (used to drive a serving process directly and to self-check
the double over loopback):
    connect_with_retry -> read_handshake -> write / read -> disconnect

Each call produces exactly one scripted behaviour. Every blocking step goes
through TimeoutGuard, so a peer that stalls turns into a Timeout or
FrameIncomplete rather than a hung test run. The endpoint only looks at
frame headers: WRITE payloads are read and dropped, READ replies are
zero-filled.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Tuple

import structlog

from mirrorfault.engine.timeout_guard import GuardResult, TimeoutGuard
from mirrorfault.engine.wire_codec import (
    INIT_MAGIC,
    INIT_PASSWD,
    REPLY_MAGIC,
    REQUEST_MAGIC,
    decode_handshake,
    decode_request,
    decode_response,
    encode_handshake,
    encode_request,
    encode_response,
    read_exactly,
    request_name,
)
from mirrorfault.exceptions import (
    ConnectTimeout,
    FrameIncomplete,
    PeerClosed,
    PlumbingError,
    ProtocolMismatch,
    Rejected,
    Timeout,
)
from mirrorfault.models import (
    ExchangeOutcome,
    FaultPoint,
    FaultKind,
    FaultScenario,
    HandshakeFrame,
    HandshakeOutcome,
    RequestFrame,
    RequestType,
    ResponseFrame,
    RetryPolicy,
    ScenarioConfig,
)

logger = structlog.get_logger()

WRONG_MAGIC = b"NOTMAGIC"
WRONG_REPLY_MAGIC = b"\xde\xad\xbe\xef"
DEFAULT_HANDLE = b"myhandle"

# Extra time the guard allows beyond a codec deadline, so the codec reports first
_GUARD_SLACK_SEC = 0.5
_READ_CHUNK = 64 * 1024


def corrupt_handle(handle: bytes) -> bytes:
    """Flip every bit of a handle so it can never match the original"""
    return bytes(b ^ 0xFF for b in handle)


class FaultEndpoint:
    """
    One scripted protocol peer bound to a single connection.

    Args:
        config: Deadlines and addresses for this scenario
        guard: TimeoutGuard shared with the caller (a fresh one by default)
    """

    def __init__(self, config: Optional[ScenarioConfig] = None, guard: Optional[TimeoutGuard] = None):
        self.config = config or ScenarioConfig()
        self.guard = guard or TimeoutGuard()

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

        self.export_size: Optional[int] = None
        self.listening = asyncio.Event()
        self.handshake_sent = asyncio.Event()
        self.bound_port: Optional[int] = None
        self.requests_seen = 0
        self.payload_bytes_dropped = 0
        self.connect_attempts = 0

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    def _require_connection(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        if self._reader is None or self._writer is None:
            raise PlumbingError("Endpoint has no connection")
        return self._reader, self._writer

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    async def listen_and_accept(self, host: str, port: int, deadline: float) -> Any:
        """Passive open: accept exactly one connection within ``deadline`` seconds."""
        loop = asyncio.get_running_loop()
        accepted: asyncio.Future = loop.create_future()

        async def _on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            if accepted.done():
                writer.close()
                return
            accepted.set_result((reader, writer))

        try:
            server = await asyncio.start_server(_on_connect, host, port, reuse_address=True)
        except OSError as e:
            raise PlumbingError(f"Cannot listen on {host}:{port}", details={"error": str(e)})

        self.bound_port = server.sockets[0].getsockname()[1]
        self.listening.set()
        logger.debug("endpoint_listening", host=host, port=self.bound_port)
        try:
            result = await self.guard.run_bounded(
                deadline, accepted, channel=server, what=f"incoming connection on {host}:{port}"
            )
        finally:
            server.close()

        self._reader, self._writer = result.unwrap()
        peer = self._writer.get_extra_info("peername")
        logger.info("endpoint_accepted", host=host, port=port, peer=peer)
        return peer

    async def connect_with_retry(self, host: str, port: int, policy: RetryPolicy) -> int:
        """
        Active open, retrying refused connections until ``policy.deadline``.

        Returns:
            Number of attempts made

        Raises:
            ConnectTimeout: once the deadline has passed without a connection
        """
        loop = asyncio.get_running_loop()
        end = loop.time() + policy.deadline

        async def _attempt():
            try:
                return await asyncio.open_connection(host, port)
            except ConnectionRefusedError:
                return None
            except OSError as e:
                raise PlumbingError(f"Cannot connect to {host}:{port}", details={"error": str(e)})

        while True:
            remaining = end - loop.time()
            if remaining <= 0:
                break

            self.connect_attempts += 1
            result = await self.guard.run_bounded(
                remaining,
                _attempt,
                what=f"connection to {host}:{port}",
                error_cls=ConnectTimeout,
            )
            streams = result.unwrap()
            if streams is not None:
                self._reader, self._writer = streams
                logger.info("endpoint_connected", host=host, port=port, attempts=self.connect_attempts)
                return self.connect_attempts

            logger.debug("connection_refused_retrying", host=host, port=port, attempt=self.connect_attempts)
            remaining = end - loop.time()
            if remaining > 0:
                await asyncio.sleep(min(policy.backoff, remaining))

        while loop.time() < end:
            await asyncio.sleep(end - loop.time())
        raise ConnectTimeout(
            f"Connection to {host}:{port} refused until deadline",
            details={"deadline": policy.deadline, "attempts": self.connect_attempts},
        )

    # ------------------------------------------------------------------
    # Low level helpers
    # ------------------------------------------------------------------

    async def _send(self, data: bytes, what: str) -> None:
        _, writer = self._require_connection()

        async def _write():
            try:
                writer.write(data)
                await writer.drain()
            except ConnectionError as e:
                raise PeerClosed(f"Peer closed connection while sending {what}", details={"error": str(e)})

        result = await self.guard.run_bounded(
            self.config.exchange_timeout_sec, _write, channel=writer, what=f"sending {what}"
        )
        result.unwrap()

    async def _framed(self, decoder, deadline: float, what: str) -> GuardResult:
        reader, writer = self._require_connection()
        return await self.guard.run_bounded(
            deadline + _GUARD_SLACK_SEC,
            decoder(reader, deadline),
            channel=writer,
            what=what,
        )

    async def _until_eof(self) -> bool:
        reader, _ = self._require_connection()
        while True:
            try:
                chunk = await reader.read(_READ_CHUNK)
            except ConnectionError:
                return False
            if not chunk:
                return True

    async def _stall(self, what: str) -> None:
        """Withhold bytes until the peer hangs up; Timeout if it never does."""
        _, writer = self._require_connection()
        logger.info("endpoint_stalling", what=what, deadline=self.config.exchange_timeout_sec)
        result = await self.guard.run_bounded(
            self.config.exchange_timeout_sec, self._until_eof, channel=writer, what=f"peer to give up on {what}"
        )
        result.unwrap()
        logger.info("peer_gave_up", what=what, elapsed=round(result.elapsed, 3))

    async def close(self) -> None:
        if self._writer is None:
            return
        writer = self._writer
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=self.config.close_timeout_sec)
        except (asyncio.TimeoutError, ConnectionError) as e:
            logger.warning("endpoint_close_failed", error=str(e), error_type=type(e).__name__)

    # ------------------------------------------------------------------
    # Destination role
    # ------------------------------------------------------------------

    async def perform_handshake(self, outcome: HandshakeOutcome, export_size: Optional[int] = None) -> None:
        """Send (or withhold) the hello according to ``outcome``."""
        size = self.config.export_size if export_size is None else export_size
        logger.info("endpoint_handshake", outcome=outcome.value, export_size=size)

        if outcome == HandshakeOutcome.HANG:
            await self._stall("hello")
            return
        if outcome == HandshakeOutcome.CLOSE:
            await self.close()
            return

        if outcome == HandshakeOutcome.WRONG_MAGIC:
            frame = encode_handshake(WRONG_MAGIC, size, INIT_MAGIC)
        elif outcome == HandshakeOutcome.WRONG_SIZE:
            frame = encode_handshake(INIT_PASSWD, size + 1, INIT_MAGIC)
        else:
            frame = encode_handshake(INIT_PASSWD, size, INIT_MAGIC)
            self.export_size = size

        await self._send(frame, "hello")
        self.handshake_sent.set()

    async def receive_request(self, deadline: Optional[float] = None) -> RequestFrame:
        """Read one request header, dropping any WRITE payload that follows it."""
        deadline = self.config.exchange_timeout_sec if deadline is None else deadline
        request: RequestFrame = (await self._framed(decode_request, deadline, "request")).unwrap()

        if request.magic != REQUEST_MAGIC:
            raise ProtocolMismatch(
                "Bad request magic", details={"reason": "bad_request_magic", "magic": request.magic.hex()}
            )

        self.requests_seen += 1
        logger.debug(
            "request_received",
            type=request_name(request.type),
            offset=request.offset,
            length=request.length,
        )

        if request.type == RequestType.WRITE and request.length:
            reader, writer = self._require_connection()
            result = await self.guard.run_bounded(
                deadline + _GUARD_SLACK_SEC,
                read_exactly(reader, request.length, deadline),
                channel=writer,
                what="write payload",
            )
            result.unwrap()
            self.payload_bytes_dropped += request.length

        return request

    async def respond(self, request: RequestFrame, outcome: ExchangeOutcome) -> None:
        """Answer ``request`` the way ``outcome`` scripts it."""
        logger.info("endpoint_respond", type=request_name(request.type), outcome=outcome.value)

        if outcome == ExchangeOutcome.HANG:
            await self._stall(f"{request_name(request.type)} reply")
            return
        if outcome == ExchangeOutcome.CLOSE:
            await self.close()
            return

        if outcome == ExchangeOutcome.WRONG_MAGIC:
            reply = encode_response(request.handle, magic=WRONG_REPLY_MAGIC)
        elif outcome == ExchangeOutcome.WRONG_HANDLE:
            reply = encode_response(corrupt_handle(request.handle))
        elif outcome == ExchangeOutcome.ERROR:
            reply = encode_response(request.handle, error_code=1)
        else:
            reply = encode_response(request.handle)
            if request.type == RequestType.READ and request.length:
                reply += bytes(request.length)

        await self._send(reply, "reply")

    async def exchange_one_request(self, outcome: ExchangeOutcome) -> RequestFrame:
        """Receive one request and answer it according to ``outcome``."""
        request = await self.receive_request()
        await self.respond(request, outcome)
        return request

    async def drain_until(self, request_type: RequestType, deadline: Optional[float] = None) -> RequestFrame:
        """
        Answer READ/WRITE requests correctly until one of ``request_type`` arrives.

        The matching request is returned unanswered.
        """
        deadline = self.config.exchange_timeout_sec if deadline is None else deadline
        loop = asyncio.get_running_loop()
        end = loop.time() + deadline

        while True:
            remaining = end - loop.time()
            if remaining <= 0:
                raise Timeout(
                    f"Timed out waiting for {request_type.name} request",
                    details={"deadline": deadline, "requests_seen": self.requests_seen},
                )
            request = await self.receive_request(remaining)
            if request.type == request_type:
                return request
            if request.type == RequestType.DISCONNECT:
                raise ProtocolMismatch(
                    f"Peer disconnected before {request_type.name}",
                    details={"reason": "early_disconnect", "requests_seen": self.requests_seen},
                )
            await self.respond(request, ExchangeOutcome.CORRECT)

    async def expect_orderly_close(self, deadline: float) -> bool:
        """True if the peer closes its side within ``deadline``; pending bytes are dropped."""
        if self._reader is None:
            return False
        result = await self.guard.run_bounded(
            deadline, self._until_eof, channel=self._writer, what="peer to close"
        )
        closed = bool(result.ok and result.value)
        logger.info("peer_close_observed", orderly=closed, elapsed=round(result.elapsed, 3))
        return closed

    async def run_scenario(self, scenario: FaultScenario) -> Dict[str, Any]:
        """
        Play the destination side of ``scenario`` from accept to teardown.

        Returns:
            Trace dict with request counts and whether the peer hung up cleanly
        """
        cfg = self.config
        trace: Dict[str, Any] = {"scenario": scenario.name, "accepted": False, "peer_closed": None}

        if not scenario.listens:
            logger.info("endpoint_refusing", scenario=scenario.name)
            return trace

        await self.listen_and_accept(cfg.bind_ip, cfg.dest_port, cfg.accept_timeout_sec)
        trace["accepted"] = True

        try:
            await self.perform_handshake(scenario.handshake_outcome)

            if scenario.point == FaultPoint.HANDSHAKE:
                if scenario.handshake_outcome in (HandshakeOutcome.WRONG_MAGIC, HandshakeOutcome.WRONG_SIZE):
                    trace["peer_closed"] = await self.expect_orderly_close(cfg.exchange_timeout_sec)

            elif scenario.point == FaultPoint.AFTER_HANDSHAKE:
                if scenario.kind == FaultKind.CLOSE:
                    await self.close()
                else:
                    trace["peer_closed"] = await self.expect_orderly_close(cfg.exchange_timeout_sec)

            elif scenario.point == FaultPoint.REQUEST:
                outcome = scenario.exchange_outcome
                await self.exchange_one_request(outcome)
                if outcome not in (ExchangeOutcome.CLOSE, ExchangeOutcome.HANG):
                    trace["peer_closed"] = await self.expect_orderly_close(cfg.exchange_timeout_sec)

            elif scenario.point == FaultPoint.BEFORE_ENTRUST:
                await self.drain_until(RequestType.ENTRUST)
                await self.close()

            elif scenario.point == FaultPoint.ENTRUST:
                entrust = await self.drain_until(RequestType.ENTRUST)
                await self.respond(entrust, scenario.exchange_outcome)
                trace["peer_closed"] = await self.expect_orderly_close(cfg.exchange_timeout_sec)
        finally:
            trace["requests_seen"] = self.requests_seen
            trace["payload_bytes_dropped"] = self.payload_bytes_dropped
            await self.close()

        return trace

    # ------------------------------------------------------------------
    # Source role
    # ------------------------------------------------------------------

    async def read_handshake(self, expected_size: Optional[int] = None) -> HandshakeFrame:
        """
        Read the peer's hello.

        Raises:
            Rejected: peer closed without sending a byte (e.g. ACL refusal)
            FrameIncomplete: peer stalled or closed mid-hello
            ProtocolMismatch: wrong magic, or size differs from ``expected_size``
        """
        result = await self._framed(decode_handshake, self.config.hello_timeout_sec, "hello")

        if isinstance(result.error, FrameIncomplete) and result.error.received == 0 and result.error.peer_closed:
            raise Rejected("Connection closed before hello", details=result.error.details)
        hello: HandshakeFrame = result.unwrap()

        if hello.magic != INIT_PASSWD:
            raise ProtocolMismatch("Bad hello magic", details={"reason": "bad_hello_magic", "magic": hello.magic.hex()})
        if expected_size is not None and hello.export_size != expected_size:
            raise ProtocolMismatch(
                "Remote size does not match local size",
                details={"reason": "size_mismatch", "remote": hello.export_size, "local": expected_size},
            )

        self.export_size = hello.export_size
        logger.debug("hello_received", export_size=hello.export_size)
        return hello

    async def send_request(
        self,
        type: RequestType,
        handle: bytes = DEFAULT_HANDLE,
        offset: int = 0,
        length: int = 0,
        magic: bytes = REQUEST_MAGIC,
    ) -> bytes:
        await self._send(encode_request(type, handle, offset, length, magic), f"{request_name(type)} request")
        return handle

    async def read_response(self, handle: bytes) -> ResponseFrame:
        """Read a reply and check it answers the request carrying ``handle``."""
        reply: ResponseFrame = (
            await self._framed(decode_response, self.config.request_limit_secs, "reply")
        ).unwrap()

        if reply.magic != REPLY_MAGIC:
            raise ProtocolMismatch("Bad reply magic", details={"reason": "bad_reply_magic", "magic": reply.magic.hex()})
        if reply.handle != handle:
            raise ProtocolMismatch(
                "Reply handle does not match request",
                details={"reason": "handle_mismatch", "expected": handle.hex(), "received": reply.handle.hex()},
            )
        if reply.error_code != 0:
            raise Rejected("Peer returned an error", details={"error_code": reply.error_code})
        return reply

    async def write(self, offset: int, data: bytes, handle: bytes = DEFAULT_HANDLE) -> ResponseFrame:
        await self.send_request(RequestType.WRITE, handle, offset, len(data))
        await self._send(data, "write payload")
        return await self.read_response(handle)

    async def read(self, offset: int, length: int, handle: bytes = DEFAULT_HANDLE) -> bytes:
        await self.send_request(RequestType.READ, handle, offset, length)
        await self.read_response(handle)
        reader, writer = self._require_connection()
        deadline = self.config.request_limit_secs
        result = await self.guard.run_bounded(
            deadline + _GUARD_SLACK_SEC, read_exactly(reader, length, deadline), channel=writer, what="read payload"
        )
        return result.unwrap()

    async def entrust(self, handle: bytes = DEFAULT_HANDLE) -> ResponseFrame:
        await self.send_request(RequestType.ENTRUST, handle)
        return await self.read_response(handle)

    async def disconnect(self, handle: bytes = DEFAULT_HANDLE) -> None:
        try:
            await self.send_request(RequestType.DISCONNECT, handle)
        finally:
            await self.close()


__all__ = [
    "DEFAULT_HANDLE",
    "FaultEndpoint",
    "WRONG_MAGIC",
    "WRONG_REPLY_MAGIC",
    "corrupt_handle",
]
