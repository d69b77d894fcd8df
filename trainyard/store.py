"""Durable record store (SQLite).

The persisted TrainingJob / Instance rows are the single source of truth
for every worker. Workers never share in-memory state: each tick reloads
its record and writes back through a conditional UPDATE, so a
read-modify-write is atomic per record:

- job transitions are ``UPDATE ... WHERE status IN (<legal sources>)``;
- instance writes carry ``WHERE status != 'terminated'`` (terminated rows
  are immutable);
- cost accrual is guarded by the ``updated_at`` watermark it read.

One connection per operation, WAL journal, ``BEGIN IMMEDIATE`` for writes.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import fields
from enum import Enum
from pathlib import Path
from typing import Any

from trainyard.errors import InstanceNotFound, JobNotFound
from trainyard.types import (
    HealthStatus,
    Instance,
    InstanceStatus,
    JobLogEntry,
    JobStatus,
    TrainingJob,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    owner_id TEXT PRIMARY KEY,
    token_balance INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    job_name TEXT NOT NULL,
    task_type TEXT NOT NULL,
    base_model TEXT NOT NULL,
    config TEXT NOT NULL DEFAULT '{}',
    hyperparameters TEXT NOT NULL DEFAULT '{}',
    max_runtime_hours REAL NOT NULL DEFAULT 24,
    dataset_id TEXT,
    instance_id TEXT,
    status TEXT NOT NULL,
    cost_estimate REAL NOT NULL DEFAULT 0,
    cost_incurred REAL NOT NULL DEFAULT 0,
    tokens_used INTEGER NOT NULL DEFAULT 0,
    tokens_refunded INTEGER NOT NULL DEFAULT 0,
    progress REAL NOT NULL DEFAULT 0,
    current_epoch INTEGER,
    current_step INTEGER,
    metrics TEXT NOT NULL DEFAULT '{}',
    runtime_minutes INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    pause_reason TEXT,
    created_at REAL NOT NULL,
    started_at REAL,
    completed_at REAL,
    failed_at REAL
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs(owner_id);

CREATE TABLE IF NOT EXISTS instances (
    id TEXT PRIMARY KEY,
    contract_id TEXT NOT NULL UNIQUE,
    owner_id TEXT NOT NULL,
    job_id TEXT,
    offer_id TEXT,
    machine_id TEXT,
    gpu_name TEXT,
    gpu_count INTEGER NOT NULL DEFAULT 1,
    region TEXT,
    status TEXT NOT NULL,
    health_status TEXT NOT NULL DEFAULT 'unknown',
    hourly_cost REAL NOT NULL DEFAULT 0,
    total_cost REAL NOT NULL DEFAULT 0,
    runtime_minutes INTEGER NOT NULL DEFAULT 0,
    auto_terminate INTEGER NOT NULL DEFAULT 1,
    max_idle_minutes INTEGER NOT NULL DEFAULT 30,
    ssh_host TEXT,
    ssh_port INTEGER,
    ssh_user TEXT NOT NULL DEFAULT 'root',
    console_url TEXT,
    last_health_check REAL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    terminated_at REAL
);
CREATE INDEX IF NOT EXISTS idx_instances_job ON instances(job_id);

CREATE TABLE IF NOT EXISTS transactions (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    job_id TEXT,
    type TEXT NOT NULL,
    tokens INTEGER NOT NULL DEFAULT 0,
    amount REAL NOT NULL DEFAULT 0,
    vast_cost REAL NOT NULL DEFAULT 0,
    platform_fee REAL NOT NULL DEFAULT 0,
    description TEXT NOT NULL,
    balance_after INTEGER,
    original_transaction_id TEXT,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transactions_job ON transactions(job_id, type);
CREATE INDEX IF NOT EXISTS idx_transactions_owner ON transactions(owner_id, created_at);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    job_id TEXT,
    dedup_key TEXT,
    period REAL,
    next_run_at REAL NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL,
    last_error TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(status, next_run_at);
CREATE INDEX IF NOT EXISTS idx_tasks_job ON tasks(job_id, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_dedup
    ON tasks(dedup_key) WHERE dedup_key IS NOT NULL AND status IN ('pending', 'running');

CREATE TABLE IF NOT EXISTS job_logs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    level TEXT NOT NULL,
    source TEXT NOT NULL,
    message TEXT NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_job_logs_job ON job_logs(job_id, seq);
"""

_JSON_FIELDS = frozenset({"config", "hyperparameters", "metrics"})
_JOB_COLUMNS = tuple(f.name for f in fields(TrainingJob))
_INSTANCE_COLUMNS = tuple(f.name for f in fields(Instance))


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _encode(value: Any) -> Any:
    match value:
        case Enum():
            return value.value
        case bool():
            return int(value)
        case dict() | list():
            return json.dumps(value, sort_keys=True)
        case _:
            return value


def _assignments(columns: tuple[str, ...], updates: dict[str, Any]) -> tuple[str, list[Any]]:
    unknown = set(updates) - set(columns)
    if unknown:
        raise ValueError(f"Unknown columns: {', '.join(sorted(unknown))}")
    sql = ", ".join(f"{name} = ?" for name in updates)
    return sql, [_encode(v) for v in updates.values()]


def _row_to_job(row: sqlite3.Row) -> TrainingJob:
    data = {k: row[k] for k in _JOB_COLUMNS}
    for key in _JSON_FIELDS:
        data[key] = json.loads(data[key] or "{}")
    data["status"] = JobStatus(data["status"])
    return TrainingJob(**data)


def _row_to_instance(row: sqlite3.Row) -> Instance:
    data = {k: row[k] for k in _INSTANCE_COLUMNS}
    data["status"] = InstanceStatus(data["status"])
    data["health_status"] = HealthStatus(data["health_status"])
    data["auto_terminate"] = bool(data["auto_terminate"])
    return Instance(**data)


class Store:
    """SQLite-backed persistence for jobs, instances, ledger and tasks."""

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Single write transaction; rolled back on any exception."""
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def insert_job(self, job: TrainingJob) -> TrainingJob:
        values = [_encode(getattr(job, c)) for c in _JOB_COLUMNS]
        placeholders = ", ".join("?" for _ in _JOB_COLUMNS)
        with self.transaction() as conn:
            conn.execute(
                f"INSERT INTO jobs ({', '.join(_JOB_COLUMNS)}) VALUES ({placeholders})",
                values,
            )
        return job

    def get_job(self, job_id: str) -> TrainingJob | None:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def require_job(self, job_id: str) -> TrainingJob:
        if (job := self.get_job(job_id)) is None:
            raise JobNotFound(job_id)
        return job

    def list_jobs(
        self,
        *,
        statuses: Iterable[JobStatus] | None = None,
        owner_id: str | None = None,
    ) -> list[TrainingJob]:
        clauses: list[str] = []
        params: list[Any] = []
        if statuses is not None:
            wanted = [s.value for s in statuses]
            clauses.append(f"status IN ({', '.join('?' for _ in wanted)})")
            params.extend(wanted)
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs{where} ORDER BY created_at ASC", params
            ).fetchall()
        return [_row_to_job(r) for r in rows]

    def update_job(
        self,
        job_id: str,
        *,
        when_status: Iterable[JobStatus] | None = None,
        **updates: Any,
    ) -> TrainingJob | None:
        """Apply ``updates`` atomically.

        With ``when_status`` the write only happens while the job is in one
        of those statuses. Returns the updated job, or None if the row did
        not match.
        """
        sql, params = _assignments(_JOB_COLUMNS, updates)
        where = "id = ?"
        params.append(job_id)
        if when_status is not None:
            allowed = [s.value for s in when_status]
            where += f" AND status IN ({', '.join('?' for _ in allowed)})"
            params.extend(allowed)
        with self.transaction() as conn:
            cur = conn.execute(f"UPDATE jobs SET {sql} WHERE {where}", params)
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row)

    def add_job_cost(
        self,
        job_id: str,
        amount: float,
        *,
        when_status: Iterable[JobStatus],
    ) -> TrainingJob | None:
        """Increment ``cost_incurred`` while the job is in ``when_status``."""
        allowed = [s.value for s in when_status]
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE jobs SET cost_incurred = cost_incurred + ? "
                f"WHERE id = ? AND status IN ({', '.join('?' for _ in allowed)})",
                [amount, job_id, *allowed],
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row)

    def claim_refund(self, job_id: str) -> int:
        """Atomically move ``tokens_used`` into ``tokens_refunded``.

        Only jobs that never entered ``running`` are eligible. Returns the
        number of tokens claimed; 0 means nothing to refund (never charged,
        already refunded, or the job ran).
        """
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT tokens_used FROM jobs WHERE id = ? AND started_at IS NULL",
                (job_id,),
            ).fetchone()
            tokens = int(row["tokens_used"]) if row else 0
            if tokens <= 0:
                return 0
            conn.execute(
                "UPDATE jobs SET tokens_refunded = tokens_refunded + tokens_used, "
                "tokens_used = 0 WHERE id = ?",
                (job_id,),
            )
        return tokens

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def insert_instance(self, instance: Instance) -> Instance:
        values = [_encode(getattr(instance, c)) for c in _INSTANCE_COLUMNS]
        placeholders = ", ".join("?" for _ in _INSTANCE_COLUMNS)
        with self.transaction() as conn:
            conn.execute(
                f"INSERT INTO instances ({', '.join(_INSTANCE_COLUMNS)}) VALUES ({placeholders})",
                values,
            )
        return instance

    def get_instance(self, instance_id: str) -> Instance | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM instances WHERE id = ?", (instance_id,)
            ).fetchone()
        return _row_to_instance(row) if row else None

    def require_instance(self, instance_id: str) -> Instance:
        if (instance := self.get_instance(instance_id)) is None:
            raise InstanceNotFound(instance_id)
        return instance

    def get_instance_by_contract(self, contract_id: str) -> Instance | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM instances WHERE contract_id = ?", (contract_id,)
            ).fetchone()
        return _row_to_instance(row) if row else None

    def list_instances(self, *, statuses: Iterable[InstanceStatus] | None = None) -> list[Instance]:
        params: list[Any] = []
        where = ""
        if statuses is not None:
            params = [s.value for s in statuses]
            where = f" WHERE status IN ({', '.join('?' for _ in params)})"
        with self.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM instances{where} ORDER BY created_at ASC", params
            ).fetchall()
        return [_row_to_instance(r) for r in rows]

    def update_instance(
        self,
        instance_id: str,
        *,
        when_status: Iterable[InstanceStatus] | None = None,
        **updates: Any,
    ) -> Instance | None:
        """Apply ``updates`` unless the instance is terminated.

        Returns the updated instance, or None if the row did not match.
        """
        sql, params = _assignments(_INSTANCE_COLUMNS, updates)
        where = "id = ? AND status != ?"
        params.extend([instance_id, InstanceStatus.TERMINATED.value])
        if when_status is not None:
            allowed = [s.value for s in when_status]
            where += f" AND status IN ({', '.join('?' for _ in allowed)})"
            params.extend(allowed)
        with self.transaction() as conn:
            cur = conn.execute(f"UPDATE instances SET {sql} WHERE {where}", params)
            if cur.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM instances WHERE id = ?", (instance_id,)
            ).fetchone()
        return _row_to_instance(row)

    def accrue_instance_cost(
        self,
        instance_id: str,
        *,
        increment: float,
        minutes: int,
        watermark: float,
        now: float,
    ) -> Instance | None:
        """Add accrued cost and runtime, guarded by the ``updated_at`` watermark.

        Returns None when another writer already accrued this interval or
        the instance is no longer running.
        """
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE instances SET total_cost = total_cost + ?, "
                "runtime_minutes = runtime_minutes + ?, updated_at = ? "
                "WHERE id = ? AND updated_at = ? AND status = ?",
                (
                    max(increment, 0.0), max(minutes, 0), now,
                    instance_id, watermark, InstanceStatus.RUNNING.value,
                ),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM instances WHERE id = ?", (instance_id,)
            ).fetchone()
        return _row_to_instance(row)

    def settle_instance_cost(
        self,
        instance_id: str,
        *,
        total_cost: float,
        runtime_minutes: int,
    ) -> None:
        """Raise cost and runtime to settled figures. Never lowers either."""
        with self.transaction() as conn:
            conn.execute(
                "UPDATE instances SET total_cost = MAX(total_cost, ?), "
                "runtime_minutes = MAX(runtime_minutes, ?) WHERE id = ? AND status != ?",
                (total_cost, runtime_minutes, instance_id, InstanceStatus.TERMINATED.value),
            )

    def mark_terminated(self, contract_id: str, *, now: float) -> Instance | None:
        """Mark the instance with ``contract_id`` terminated (idempotent)."""
        with self.transaction() as conn:
            conn.execute(
                "UPDATE instances SET status = ?, terminated_at = ? "
                "WHERE contract_id = ? AND status != ?",
                (
                    InstanceStatus.TERMINATED.value, now,
                    contract_id, InstanceStatus.TERMINATED.value,
                ),
            )
            row = conn.execute(
                "SELECT * FROM instances WHERE contract_id = ?", (contract_id,)
            ).fetchone()
        return _row_to_instance(row) if row else None

    # -------------------------------------------------------------------------
    # Job logs
    # -------------------------------------------------------------------------

    def append_job_log(self, entry: JobLogEntry, *, keep: int) -> None:
        """Append ``entry`` and drop the job's oldest lines beyond the latest ``keep``."""
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO job_logs (job_id, level, source, message, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (entry.job_id, entry.level, entry.source, entry.message, entry.created_at),
            )
            conn.execute(
                "DELETE FROM job_logs WHERE job_id = ? AND seq <= ("
                "SELECT seq FROM job_logs WHERE job_id = ? ORDER BY seq DESC LIMIT 1 OFFSET ?)",
                (entry.job_id, entry.job_id, keep),
            )

    def job_logs(self, job_id: str, *, limit: int) -> list[JobLogEntry]:
        """The latest ``limit`` lines of ``job_id``, oldest first."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM (SELECT * FROM job_logs WHERE job_id = ? ORDER BY seq DESC LIMIT ?) "
                "ORDER BY seq ASC",
                (job_id, limit),
            ).fetchall()
        return [
            JobLogEntry(
                job_id=r["job_id"], message=r["message"], level=r["level"],
                source=r["source"], created_at=r["created_at"],
            )
            for r in rows
        ]


__all__ = ["SCHEMA", "Store", "new_id"]
