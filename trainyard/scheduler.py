"""Durable task scheduler.

Two kinds of work, both persisted in the ``tasks`` table so they survive a
restart:

- one-shot tasks, retried with the handler's ``RetryPolicy`` until they
  succeed or run out of attempts;
- recurring tasks with a fixed period, keyed by a ``dedup_key`` so the same
  reconciler is never registered twice. A tick returning
  ``TickOutcome.STOP`` deregisters it. A tick that raises is retried with
  backoff; once the policy's attempts are spent it waits for its next
  period with the budget reset, so only STOP ends a recurring task.

Example:
    scheduler = Scheduler(store)
    scheduler.register("process_job", orchestrator.process_task, retry=RetryPolicy(3, 2.0))
    scheduler.enqueue("process_job", {"job_id": job.id}, job_id=job.id)
    await scheduler.run_forever(stop_event)
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from typing import Any, TypeAlias

from loguru import logger

from trainyard.retry import RetryPolicy
from trainyard.store import Store, new_id


class TickOutcome(Enum):
    CONTINUE = "continue"
    STOP = "stop"


class TaskKind(StrEnum):
    ONCE = "once"
    RECURRING = "recurring"


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


Payload: TypeAlias = dict[str, Any]
TaskHandler: TypeAlias = Callable[[Payload], Awaitable[TickOutcome | None]]


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    name: str
    kind: TaskKind
    payload: Payload
    next_run_at: float
    status: TaskStatus
    attempts: int = 0
    max_attempts: int = 1
    job_id: str | None = None
    dedup_key: str | None = None
    period: float | None = None
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class _Registration:
    handler: TaskHandler
    retry: RetryPolicy = field(default_factory=RetryPolicy)


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        name=row["name"],
        kind=TaskKind(row["kind"]),
        payload=json.loads(row["payload"] or "{}"),
        next_run_at=row["next_run_at"],
        status=TaskStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        job_id=row["job_id"],
        dedup_key=row["dedup_key"],
        period=row["period"],
        last_error=row["last_error"],
    )


class Scheduler:
    """Runs persisted tasks whose ``next_run_at`` has passed."""

    def __init__(
        self,
        store: Store,
        *,
        now: Callable[[], float] = time.time,
        poll_interval: float = 1.0,
        concurrency: int = 16,
    ) -> None:
        self._store = store
        self._now = now
        self._poll_interval = poll_interval
        self._concurrency = concurrency
        self._handlers: dict[str, _Registration] = {}
        self._inflight: dict[str, asyncio.Task[None]] = {}
        self._log = logger.bind(component="scheduler")

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, name: str, handler: TaskHandler, *, retry: RetryPolicy | None = None) -> None:
        self._handlers[name] = _Registration(handler, retry or RetryPolicy())

    def enqueue(
        self,
        name: str,
        payload: Payload,
        *,
        job_id: str | None = None,
        delay: float = 0.0,
        max_attempts: int | None = None,
    ) -> str:
        """Persist a one-shot task. Returns its id."""
        return self._insert(
            name, TaskKind.ONCE, payload,
            job_id=job_id,
            next_run_at=self._now() + delay,
            max_attempts=max_attempts or self._policy(name).max_attempts,
        )

    def schedule_recurring(
        self,
        name: str,
        payload: Payload,
        *,
        period: float,
        dedup_key: str,
        job_id: str | None = None,
        delay: float | None = None,
        max_attempts: int | None = None,
    ) -> str | None:
        """Register a recurring task. Returns None if ``dedup_key`` is already active."""
        try:
            task_id = self._insert(
                name, TaskKind.RECURRING, payload,
                job_id=job_id,
                dedup_key=dedup_key,
                period=period,
                next_run_at=self._now() + (period if delay is None else delay),
                max_attempts=max_attempts or self._policy(name).max_attempts,
            )
        except sqlite3.IntegrityError:
            self._log.debug("Recurring task {key} already scheduled", key=dedup_key)
            return None
        self._log.info("Scheduled {name} every {period}s ({key})", name=name, period=period, key=dedup_key)
        return task_id

    def is_scheduled(self, dedup_key: str) -> bool:
        with self._store.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM tasks WHERE dedup_key = ? AND status IN (?, ?)",
                (dedup_key, TaskStatus.PENDING.value, TaskStatus.RUNNING.value),
            ).fetchone()
        return row is not None

    def deregister(self, dedup_key: str) -> bool:
        """Stop a recurring task. A tick already running finishes but is not rescheduled."""
        with self._store.transaction() as conn:
            cur = conn.execute(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE dedup_key = ? AND status IN (?, ?)",
                (
                    TaskStatus.DONE.value, self._now(), dedup_key,
                    TaskStatus.PENDING.value, TaskStatus.RUNNING.value,
                ),
            )
        return cur.rowcount > 0

    def remove_pending(self, job_id: str) -> int:
        """Delete one-shot tasks of ``job_id`` that have not started yet."""
        with self._store.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM tasks WHERE job_id = ? AND kind = ? AND status = ?",
                (job_id, TaskKind.ONCE.value, TaskStatus.PENDING.value),
            )
        if cur.rowcount:
            self._log.info("Removed {n} pending task(s) for job {job}", n=cur.rowcount, job=job_id)
        return cur.rowcount

    def recover(self) -> int:
        """Return tasks left ``running`` by a crashed process to ``pending``."""
        with self._store.transaction() as conn:
            cur = conn.execute(
                "UPDATE tasks SET status = ?, next_run_at = MIN(next_run_at, ?), updated_at = ? "
                "WHERE status = ?",
                (TaskStatus.PENDING.value, self._now(), self._now(), TaskStatus.RUNNING.value),
            )
        if cur.rowcount:
            self._log.warning("Recovered {n} interrupted task(s)", n=cur.rowcount)
        return cur.rowcount

    def get(self, task_id: str) -> Task | None:
        with self._store.connection() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def tasks(self, *, job_id: str | None = None) -> list[Task]:
        sql, params = "SELECT * FROM tasks", []
        if job_id is not None:
            sql, params = sql + " WHERE job_id = ?", [job_id]
        with self._store.connection() as conn:
            rows = conn.execute(sql + " ORDER BY created_at ASC, rowid ASC", params).fetchall()
        return [_row_to_task(r) for r in rows]

    def stats(self) -> dict[str, int]:
        counts = {s.value: 0 for s in TaskStatus}
        with self._store.connection() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM tasks GROUP BY status"):
                counts[row["status"]] = row["n"]
        counts["inflight"] = len(self._inflight)
        return counts

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def run_due(self) -> int:
        """Claim every due task, run them concurrently and wait for all. Returns how many ran."""
        claimed = self._claim(self._concurrency)
        if not claimed:
            return 0
        await asyncio.gather(*(self._spawn(t) for t in claimed))
        return len(claimed)

    async def run_forever(self, stop: asyncio.Event) -> None:
        recovered = self.recover()
        self._log.info(
            "Scheduler started ({n} handlers, {r} recovered)", n=len(self._handlers), r=recovered,
        )
        try:
            while not stop.is_set():
                capacity = self._concurrency - len(self._inflight)
                for task in self._claim(capacity) if capacity > 0 else []:
                    self._spawn(task)
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self._poll_interval)
                except TimeoutError:
                    pass
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Cancel in-flight tasks; their rows go back to pending for the next process."""
        inflight = list(self._inflight.values())
        for t in inflight:
            t.cancel()
        await asyncio.gather(*inflight, return_exceptions=True)

    def _policy(self, name: str) -> RetryPolicy:
        reg = self._handlers.get(name)
        return reg.retry if reg is not None else RetryPolicy()

    def _insert(
        self,
        name: str,
        kind: TaskKind,
        payload: Payload,
        *,
        next_run_at: float,
        max_attempts: int,
        job_id: str | None = None,
        dedup_key: str | None = None,
        period: float | None = None,
    ) -> str:
        task_id = new_id("task")
        now = self._now()
        with self._store.transaction() as conn:
            conn.execute(
                """INSERT INTO tasks
                   (id, name, kind, payload, job_id, dedup_key, period, next_run_at,
                    attempts, max_attempts, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)""",
                (
                    task_id, name, kind.value, json.dumps(payload, sort_keys=True), job_id,
                    dedup_key, period, next_run_at, max_attempts, TaskStatus.PENDING.value,
                    now, now,
                ),
            )
        return task_id

    def _claim(self, limit: int) -> list[Task]:
        now = self._now()
        claimed: list[Task] = []
        with self._store.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE status = ? AND next_run_at <= ? "
                "ORDER BY next_run_at ASC, rowid ASC LIMIT ?",
                (TaskStatus.PENDING.value, now, limit),
            ).fetchall()
            for row in rows:
                conn.execute(
                    "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
                    (TaskStatus.RUNNING.value, now, row["id"]),
                )
                claimed.append(_row_to_task(row))
        return claimed

    def _spawn(self, task: Task) -> asyncio.Task[None]:
        runner = asyncio.create_task(self._execute(task), name=f"{task.name}-{task.id}")
        self._inflight[task.id] = runner
        runner.add_done_callback(lambda _: self._inflight.pop(task.id, None))
        return runner

    async def _execute(self, task: Task) -> None:
        log = self._log.bind(task=task.name, job_id=task.job_id)
        reg = self._handlers.get(task.name)
        if reg is None:
            log.error("No handler registered for {name}", name=task.name)
            self._finish(task, TaskStatus.FAILED, error=f"no handler for {task.name}")
            return

        try:
            outcome = await reg.handler(task.payload)
        except asyncio.CancelledError:
            self._release(task)
            raise
        except Exception as e:
            self._on_error(task, reg.retry, e, log)
            return

        match task.kind, outcome:
            case TaskKind.RECURRING, TickOutcome.STOP:
                log.debug("Recurring task {key} stopped itself", key=task.dedup_key)
                self._finish(task, TaskStatus.DONE)
            case TaskKind.RECURRING, _:
                self._reschedule(task, self._now() + (task.period or 0.0), attempts=0)
            case _:
                self._finish(task, TaskStatus.DONE)

    def _on_error(self, task: Task, policy: RetryPolicy, error: Exception, log: Any) -> None:
        attempts = task.attempts + 1
        if attempts < task.max_attempts and policy.retry_on(error):
            delay = policy.delay(attempts - 1)
            log.warning(
                "{name} failed (attempt {n}/{max}): {error}. Retrying in {delay:.1f}s",
                name=task.name, n=attempts, max=task.max_attempts, error=error, delay=delay,
            )
            self._reschedule(task, self._now() + delay, attempts=attempts, error=str(error))
            return

        # recurring ticks end only by returning STOP
        if task.kind is TaskKind.RECURRING:
            log.opt(exception=error).error(
                "{name} failed {n} time(s) in a row: {error}. Next tick in {period:.1f}s",
                name=task.name, n=attempts, error=error, period=task.period or 0.0,
            )
            self._reschedule(task, self._now() + (task.period or 0.0), attempts=0, error=str(error))
            return

        log.opt(exception=error).error(
            "{name} failed after {n} attempt(s): {error}", name=task.name, n=attempts, error=error,
        )
        self._finish(task, TaskStatus.FAILED, error=str(error), attempts=attempts)

    def _reschedule(
        self,
        task: Task,
        next_run_at: float,
        *,
        attempts: int,
        error: str | None = None,
    ) -> None:
        with self._store.transaction() as conn:
            conn.execute(
                "UPDATE tasks SET status = ?, next_run_at = ?, attempts = ?, last_error = ?, "
                "updated_at = ? WHERE id = ? AND status = ?",
                (
                    TaskStatus.PENDING.value, next_run_at, attempts, error, self._now(),
                    task.id, TaskStatus.RUNNING.value,
                ),
            )

    def _release(self, task: Task) -> None:
        with self._store.transaction() as conn:
            conn.execute(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (TaskStatus.PENDING.value, self._now(), task.id, TaskStatus.RUNNING.value),
            )

    def _finish(
        self,
        task: Task,
        status: TaskStatus,
        *,
        error: str | None = None,
        attempts: int | None = None,
    ) -> None:
        with self._store.transaction() as conn:
            conn.execute(
                "UPDATE tasks SET status = ?, last_error = ?, attempts = ?, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (
                    status.value, error, task.attempts if attempts is None else attempts,
                    self._now(), task.id, TaskStatus.RUNNING.value,
                ),
            )


__all__ = ["Payload", "Scheduler", "Task", "TaskHandler", "TaskKind", "TaskStatus", "TickOutcome"]
