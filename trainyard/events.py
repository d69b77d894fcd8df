"""Job and instance notifications.

Events are frozen dataclasses. ``EventBus`` fans them out to global
handlers registered with ``on`` and to per-job subscriber queues.
Delivery is best-effort: a failing handler is logged and skipped, a full
subscriber queue drops the event.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias, TypeVar, runtime_checkable

from loguru import logger

# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True, slots=True)
class JobStatusChanged:
    job_id: str
    status: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class JobProgress:
    job_id: str
    progress: float
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class JobLog:
    job_id: str
    message: str
    level: str
    source: str
    created_at: float


@dataclass(frozen=True, slots=True)
class InstanceStatusChanged:
    instance_id: str
    job_id: str | None
    status: str


TrainyardEvent: TypeAlias = JobStatusChanged | JobProgress | JobLog | InstanceStatusChanged

Handler: TypeAlias = Callable[[Any], Any]

F = TypeVar("F", bound=Handler)


# =============================================================================
# Sink
# =============================================================================


@runtime_checkable
class EventSink(Protocol):
    def publish(self, event: TrainyardEvent) -> None: ...


class EventBus:
    """In-process publish/subscribe keyed by job id."""

    def __init__(self, *, queue_size: int = 256) -> None:
        self._handlers: list[tuple[tuple[type, ...], Handler]] = []
        self._subscribers: dict[str, set[asyncio.Queue[TrainyardEvent]]] = {}
        self._queue_size = queue_size
        self._log = logger.bind(component="events")

    def on(self, *event_types: type) -> Callable[[F], F]:
        """Register handler. Empty event_types = wildcard."""

        def decorator(fn: F) -> F:
            self._handlers.append((event_types, fn))
            return fn

        return decorator

    def publish(self, event: TrainyardEvent) -> None:
        for types, handler in self._handlers:
            if types and not isinstance(event, types):
                continue
            try:
                handler(event)
            except Exception as e:
                self._log.warning(
                    "Handler {handler} failed on {event}: {error}",
                    handler=getattr(handler, "__name__", repr(handler)),
                    event=type(event).__name__,
                    error=e,
                )

        job_id = getattr(event, "job_id", None)
        for queue in self._subscribers.get(job_id or "", ()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self._log.debug("Subscriber queue full for job {job}, dropping event", job=job_id)

    async def subscribe(self, job_id: str) -> AsyncIterator[TrainyardEvent]:
        """Yield events for ``job_id`` until the consumer stops iterating."""
        queue: asyncio.Queue[TrainyardEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(job_id, set()).add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            live = self._subscribers.get(job_id)
            if live is not None:
                live.discard(queue)
                if not live:
                    del self._subscribers[job_id]

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def clear(self) -> None:
        """Remove all handlers."""
        self._handlers.clear()


class NullSink:
    """Discards everything."""

    def publish(self, event: TrainyardEvent) -> None:
        pass


__all__ = [
    "EventBus",
    "EventSink",
    "InstanceStatusChanged",
    "JobLog",
    "JobProgress",
    "JobStatusChanged",
    "NullSink",
    "TrainyardEvent",
]
