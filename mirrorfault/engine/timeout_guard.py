"""
Timeout Guard - hard deadlines around blocking protocol steps.

Every accept, connect and framed read the double performs runs through
``TimeoutGuard.run_bounded``. When the deadline passes the guard closes
the channel the operation was waiting on (stream writer or listening
server), abandons the pending call and hands back a ``Timeout`` value.
Control always returns to the caller; a timeout is never reported as a
success.

Usage:
    guard = TimeoutGuard()
    result = await guard.run_bounded(2.0, reader.read(16), channel=writer, what="reply")
    if not result.ok:
        ...
    data = result.unwrap()
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, Type, TypeVar, Union

import structlog

from mirrorfault.exceptions import HarnessError, Timeout
from mirrorfault.models import RetryPolicy

logger = structlog.get_logger()

T = TypeVar("T")

# Grace period given to an abandoned operation to notice its channel closed
_ABANDON_GRACE_SEC = 0.1

__all__ = ["GuardResult", "RetryPolicy", "TimeoutGuard"]


@dataclass
class GuardResult(Generic[T]):
    """Outcome of a guarded operation: a value or a harness error, never both."""

    value: Optional[T] = None
    error: Optional[HarnessError] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, Timeout)

    def unwrap(self) -> T:
        """Return the value or raise the recorded error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def _teardown(channel: Any) -> None:
    if channel is None:
        return
    try:
        channel.close()
    except (OSError, RuntimeError) as e:
        logger.warning("guard_channel_close_failed", error=str(e), error_type=type(e).__name__)


class TimeoutGuard:
    """Runs awaitables under a hard deadline."""

    async def run_bounded(
        self,
        deadline: float,
        operation: Union[Awaitable[T], Callable[[], Awaitable[T]]],
        *,
        channel: Any = None,
        what: str = "operation",
        error_cls: Type[Timeout] = Timeout,
    ) -> GuardResult[T]:
        """
        Run ``operation`` for at most ``deadline`` seconds.

        Args:
            deadline: Seconds the operation may take
            operation: Awaitable, or a zero-argument callable returning one
            channel: Object with ``close()`` torn down if the deadline passes
            what: Name used in the fixed diagnostic
            error_cls: Timeout subclass reported on expiry

        Returns:
            GuardResult with the value, the HarnessError the operation
            raised, or a Timeout built from ``error_cls``
        """
        if callable(operation):
            operation = operation()

        loop = asyncio.get_running_loop()
        started = loop.time()
        task = asyncio.ensure_future(operation)

        try:
            done, _ = await asyncio.wait({task}, timeout=max(deadline, 0))
        except asyncio.CancelledError:
            task.cancel()
            raise

        elapsed = loop.time() - started
        if task in done:
            try:
                return GuardResult(value=task.result(), elapsed=elapsed)
            except HarnessError as e:
                return GuardResult(error=e, elapsed=elapsed)

        logger.warning("guarded_operation_timeout", what=what, deadline=deadline)
        _teardown(channel)
        await self._abandon(task, what)

        return GuardResult(
            error=error_cls(
                f"Timed out waiting for {what}",
                details={"deadline": deadline, "elapsed": elapsed},
            ),
            elapsed=elapsed,
        )

    async def _abandon(self, task: asyncio.Future, what: str) -> None:
        done, _ = await asyncio.wait({task}, timeout=_ABANDON_GRACE_SEC)
        if not done:
            task.cancel()
            await asyncio.wait({task})
        if task.cancelled():
            return
        # The operation finished after its deadline; the timeout stands.
        exc = task.exception()
        if exc is not None:
            logger.debug("abandoned_operation_failed", what=what, error=str(exc), error_type=type(exc).__name__)
