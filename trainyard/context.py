"""Cancellable deadline contexts for polling waits.

Every wait that blocks a task (orchestrator startup wait, marketplace
startup monitor) runs inside a ``WaitContext``. Cancelling the context
wakes the sleeper immediately with ``JobCancelled``; the deadline bounds
the wait without blocking anything but the calling task.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TypeVar

from trainyard.errors import JobCancelled


@dataclass
class WaitContext:
    """Cancellation signal plus an optional deadline.

    Example:
        >>> ctx = WaitContext.with_timeout(900, job_id="job-1")
        >>> while not ready():
        ...     await ctx.sleep(30)   # raises JobCancelled on ctx.cancel()
    """

    job_id: str | None = None
    deadline: float | None = None
    clock: Callable[[], float] = time.monotonic
    _cancelled: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    @classmethod
    def with_timeout(
        cls,
        timeout: float | None,
        *,
        job_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> WaitContext:
        deadline = clock() + timeout if timeout is not None else None
        return cls(job_id=job_id, deadline=deadline, clock=clock)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self.clock())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and self.clock() >= self.deadline

    def check(self) -> None:
        if self.cancelled:
            raise JobCancelled(self.job_id or "")

    async def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``, never past the deadline; raise if cancelled."""
        self.check()
        remaining = self.remaining
        if remaining is not None:
            seconds = min(seconds, remaining)
        with suppress(TimeoutError):
            await asyncio.wait_for(self._cancelled.wait(), timeout=max(seconds, 0.0))
        self.check()


class ContextRegistry:
    """Live wait contexts keyed by job id, so cancellation can reach them."""

    def __init__(self) -> None:
        self._contexts: dict[str, set[WaitContext]] = {}

    def register(self, ctx: WaitContext) -> WaitContext:
        if ctx.job_id is not None:
            self._contexts.setdefault(ctx.job_id, set()).add(ctx)
        return ctx

    def discard(self, ctx: WaitContext) -> None:
        if ctx.job_id is None:
            return
        live = self._contexts.get(ctx.job_id)
        if live is not None:
            live.discard(ctx)
            if not live:
                del self._contexts[ctx.job_id]

    def cancel(self, job_id: str) -> int:
        """Cancel every live context of ``job_id``. Returns how many were signalled."""
        live = self._contexts.pop(job_id, set())
        for ctx in live:
            ctx.cancel()
        return len(live)


T = TypeVar("T")


async def wait_for_ready(
    poll_fn: Callable[[], Awaitable[T | None]],
    ready_check: Callable[[T], bool],
    *,
    ctx: WaitContext,
    terminal_error: Callable[[T], Exception | None] | None = None,
    interval: float = 30.0,
    description: str = "resource",
) -> T:
    """Poll until ``ready_check`` passes.

    Args:
        poll_fn: Async function that polls for the resource state.
        ready_check: Returns True when the resource is ready.
        ctx: Cancellation and deadline for the wait.
        terminal_error: Returns an exception to raise if the resource
            reached a terminal failure state, else None.
        interval: Seconds between polls.
        description: Used in the timeout message.

    Raises:
        TimeoutError: If the context deadline passes first.
        JobCancelled: If the context is cancelled.
    """
    while True:
        ctx.check()
        result = await poll_fn()

        if result is not None:
            if ready_check(result):
                return result
            if terminal_error is not None and (error := terminal_error(result)) is not None:
                raise error

        if ctx.expired:
            raise TimeoutError(f"Timeout waiting for {description}")

        await ctx.sleep(interval)


__all__ = ["ContextRegistry", "WaitContext", "wait_for_ready"]
