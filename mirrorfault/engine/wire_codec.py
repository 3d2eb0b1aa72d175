"""
Wire Codec - frame layouts of the mirroring protocol.

Three frame types cross the wire:

    handshake  152 bytes  magic[8] reserved[8] export_size(u64) pad[128]
    request     28 bytes  magic[4] type(u32) handle[8] offset(64) length(u32)
    response    16 bytes  magic[4] error_code(u32) handle[8]

All integers are big-endian except the request offset, which goes through
``n64`` first: the eight bytes of the value are reversed and the result is
then written big-endian. Peers on both sides apply the same reversal, so
the field round-trips even though the raw bytes do not read as ordinary
big-endian. Keep it; the process under test depends on it.

``encode_*`` / ``parse_*`` are pure. ``decode_*`` pull a frame off an
``asyncio.StreamReader`` within a deadline and raise ``FrameIncomplete``
when the peer stalls or closes early, never returning a partial frame.
"""
from __future__ import annotations

import asyncio
import struct

import structlog

from mirrorfault.exceptions import FrameIncomplete, InvalidHandle
from mirrorfault.models import HandshakeFrame, RequestFrame, ResponseFrame, RequestType

logger = structlog.get_logger()

INIT_PASSWD = b"NBDMAGIC"
INIT_MAGIC = struct.pack(">Q", 0x0000420281861253)
REQUEST_MAGIC = struct.pack(">I", 0x25609513)
REPLY_MAGIC = struct.pack(">I", 0x67446698)

HANDLE_SIZE = 8
HANDSHAKE_SIZE = 152
REQUEST_SIZE = 28
RESPONSE_SIZE = 16

_HANDSHAKE = struct.Struct(">8s8sQ128x")
_REQUEST_BODY = struct.Struct(">I8sQI")
_RESPONSE = struct.Struct(">4sI8s")

_U64_MASK = 0xFFFFFFFFFFFFFFFF


def n64(value: int) -> int:
    """Reverse the byte order of a 64-bit value. Applying it twice is a no-op."""
    raw = struct.pack(">Q", value & _U64_MASK)
    return struct.unpack(">Q", raw[::-1])[0]


def _to_signed64(value: int) -> int:
    return value - (1 << 64) if value >= (1 << 63) else value


# Handshake

def encode_handshake(magic: bytes, export_size: int, reserved: bytes = b"") -> bytes:
    """Build a 152-byte hello. Reserved regions not supplied are zero bytes."""
    return _HANDSHAKE.pack(magic, reserved, export_size & _U64_MASK)


def parse_handshake(data: bytes) -> HandshakeFrame:
    if len(data) < HANDSHAKE_SIZE:
        raise FrameIncomplete(
            f"Handshake needs {HANDSHAKE_SIZE} bytes, got {len(data)}",
            details={"expected": HANDSHAKE_SIZE, "received": len(data)},
        )
    magic, reserved, export_size = _HANDSHAKE.unpack(data[:HANDSHAKE_SIZE])
    return HandshakeFrame(magic=magic, reserved=reserved, export_size=export_size)


# Request

def encode_request(
    type: int,
    handle: bytes,
    offset: int = 0,
    length: int = 0,
    magic: bytes = REQUEST_MAGIC,
) -> bytes:
    if not isinstance(handle, (bytes, bytearray)) or len(handle) != HANDLE_SIZE:
        raise InvalidHandle(
            "Handle must be exactly 8 bytes",
            details={"handle": repr(handle)},
        )
    return bytes(magic) + _REQUEST_BODY.pack(int(type), bytes(handle), n64(offset), length)


def parse_request(data: bytes) -> RequestFrame:
    if len(data) < REQUEST_SIZE:
        raise FrameIncomplete(
            f"Request needs {REQUEST_SIZE} bytes, got {len(data)}",
            details={"expected": REQUEST_SIZE, "received": len(data)},
        )
    magic = data[:4]
    type_, handle, raw_offset, length = _REQUEST_BODY.unpack(data[4:REQUEST_SIZE])
    return RequestFrame(
        magic=magic,
        type=type_,
        handle=handle,
        offset=_to_signed64(n64(raw_offset)),
        length=length,
    )


# Response

def encode_response(handle: bytes, error_code: int = 0, magic: bytes = REPLY_MAGIC) -> bytes:
    if len(handle) != HANDLE_SIZE:
        raise InvalidHandle("Handle must be exactly 8 bytes", details={"handle": repr(handle)})
    return _RESPONSE.pack(magic, error_code, handle)


def parse_response(data: bytes) -> ResponseFrame:
    if len(data) < RESPONSE_SIZE:
        raise FrameIncomplete(
            f"Response needs {RESPONSE_SIZE} bytes, got {len(data)}",
            details={"expected": RESPONSE_SIZE, "received": len(data)},
        )
    magic, error_code, handle = _RESPONSE.unpack(data[:RESPONSE_SIZE])
    return ResponseFrame(magic=magic, error_code=error_code, handle=handle)


def request_name(type_: int) -> str:
    try:
        return RequestType(type_).name
    except ValueError:
        return f"UNKNOWN({type_})"


# Framed reads

async def read_exactly(reader: asyncio.StreamReader, size: int, deadline: float) -> bytes:
    """
    Read exactly ``size`` bytes within ``deadline`` seconds.

    Raises FrameIncomplete (with the number of bytes that did arrive) if the
    peer closes or the deadline passes first.
    """
    loop = asyncio.get_running_loop()
    end = loop.time() + deadline
    buf = bytearray()
    reason = "timeout"

    while len(buf) < size:
        remaining = end - loop.time()
        if remaining <= 0:
            break
        try:
            chunk = await asyncio.wait_for(reader.read(size - len(buf)), timeout=remaining)
        except asyncio.TimeoutError:
            break
        except ConnectionError as e:
            logger.debug("framed_read_reset", error=str(e), received=len(buf))
            reason = "reset"
            break
        if not chunk:
            reason = "eof"
            break
        buf.extend(chunk)

    if len(buf) < size:
        raise FrameIncomplete(
            f"Expected {size} bytes, received {len(buf)}",
            details={"expected": size, "received": len(buf), "reason": reason},
        )
    return bytes(buf)


async def decode_handshake(reader: asyncio.StreamReader, deadline: float) -> HandshakeFrame:
    return parse_handshake(await read_exactly(reader, HANDSHAKE_SIZE, deadline))


async def decode_request(reader: asyncio.StreamReader, deadline: float) -> RequestFrame:
    return parse_request(await read_exactly(reader, REQUEST_SIZE, deadline))


async def decode_response(reader: asyncio.StreamReader, deadline: float) -> ResponseFrame:
    return parse_response(await read_exactly(reader, RESPONSE_SIZE, deadline))
