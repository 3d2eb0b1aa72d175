"""
Control Channel - client for the local control socket of the process under test.

One command per connection: the tokens are joined with single spaces and
terminated by a newline; the process answers with exactly one line of the
form ``<code>: <message>``. Code ``0`` means the command was accepted.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional, Union

import structlog

from mirrorfault.engine.timeout_guard import TimeoutGuard
from mirrorfault.exceptions import PeerClosed, PlumbingError, ProtocolMismatch
from mirrorfault.models import ControlReply

logger = structlog.get_logger()


def format_command(*tokens: Any) -> bytes:
    return (" ".join(str(t) for t in tokens if t is not None) + "\n").encode()


def parse_reply(line: str) -> ControlReply:
    code, sep, message = line.rstrip("\r\n").partition(": ")
    if not sep or not code:
        raise ProtocolMismatch("Malformed control reply", details={"line": line})
    return ControlReply(code=code, message=message)


def parse_status(line: str) -> Dict[str, Union[str, int, bool]]:
    """
    Parse a status line of space separated ``key=value`` pairs.

    A leading ``<code>: `` is tolerated. Booleans and integers are converted.
    """
    text = line.strip()
    code, sep, rest = text.partition(": ")
    if sep and "=" not in code:
        text = rest

    status: Dict[str, Union[str, int, bool]] = {}
    for pair in text.split():
        key, eq, value = pair.partition("=")
        if not eq:
            continue
        if value in ("true", "false"):
            status[key] = value == "true"
        elif value.lstrip("-").isdigit():
            status[key] = int(value)
        else:
            status[key] = value
    return status


class ControlChannel:
    """
    Synchronous request/response client over a Unix stream socket.

    Args:
        path: Control socket path
        timeout_sec: Deadline for one command round trip
        guard: TimeoutGuard used for connect and reply reads
    """

    def __init__(self, path: Path, timeout_sec: float = 10.0, guard: Optional[TimeoutGuard] = None):
        self.path = Path(path)
        self.timeout_sec = timeout_sec
        self.guard = guard or TimeoutGuard()

    async def _round_trip(self, *tokens: Any) -> str:
        try:
            reader, writer = await asyncio.open_unix_connection(str(self.path))
        except OSError as e:
            raise PlumbingError(f"Cannot open control socket {self.path}", details={"error": str(e)})

        async def _exchange() -> bytes:
            try:
                writer.write(format_command(*tokens))
                await writer.drain()
                return await reader.readline()
            except ConnectionError as e:
                raise PeerClosed("Control socket reset", details={"command": tokens[0], "error": str(e)})

        logger.debug("control_command", command=" ".join(str(t) for t in tokens))
        try:
            result = await self.guard.run_bounded(
                self.timeout_sec, _exchange, channel=writer, what=f"control reply to {tokens[0]}"
            )
            raw = result.unwrap()
        finally:
            writer.close()

        if not raw:
            raise PeerClosed("Control socket closed without a reply", details={"command": tokens[0]})
        return raw.decode(errors="replace")

    async def command(self, *tokens: Any) -> ControlReply:
        reply = parse_reply(await self._round_trip(*tokens))
        logger.info("control_reply", command=tokens[0], code=reply.code, message=reply.message)
        return reply

    async def mirror(self, ip: str, port: int) -> ControlReply:
        return await self.command("mirror", ip, port)

    async def acl(self, *addresses: str) -> ControlReply:
        return await self.command("acl", *addresses)

    async def cancel(self) -> ControlReply:
        return await self.command("break")

    async def status(self) -> Dict[str, Union[str, int, bool]]:
        return parse_status(await self._round_trip("status"))
