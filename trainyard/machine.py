"""Job state machine.

Legal edges live in ``VALID_TRANSITIONS`` and nowhere else. Every status
change goes through ``JobMachine.transition``, which turns the edge set
into a conditional UPDATE, so a transition whose source state was
changed by a concurrent worker simply does not apply.

Callers express intent with command objects (``PromoteToRunning``,
``SettleCompletion``, ``FailJob``, ...) that bundle the fields each
transition writes and the settlement each one implies.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger

from trainyard.billing import Billing
from trainyard.errors import InvalidTransition
from trainyard.events import EventSink, JobStatusChanged, NullSink
from trainyard.store import Store
from trainyard.types import JobStatus, TrainingJob

TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Valid state transitions - anything not here is rejected
VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROVISIONING, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.PROVISIONING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED,
    }),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in VALID_TRANSITIONS[current]


def sources_of(target: JobStatus) -> frozenset[JobStatus]:
    """States from which ``target`` is reachable in one step."""
    return frozenset(s for s, targets in VALID_TRANSITIONS.items() if target in targets)


# =============================================================================
# Machine
# =============================================================================


class JobMachine:
    """Applies transitions and their side effects (events, refunds, settlement)."""

    def __init__(
        self,
        store: Store,
        billing: Billing,
        events: EventSink | None = None,
        *,
        platform_fee_rate: float = 0.5,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.billing = billing
        self.events = events or NullSink()
        self.platform_fee_rate = platform_fee_rate
        self.now = now
        self.log = logger.bind(component="machine")

    def execute(self, command: Command) -> Any:
        return command.run(self)

    def transition(
        self,
        job_id: str,
        target: JobStatus,
        *,
        from_: Iterable[JobStatus] | None = None,
        strict: bool = False,
        metadata: dict[str, Any] | None = None,
        **fields: Any,
    ) -> TrainingJob | None:
        """Move ``job_id`` to ``target`` if its current state allows it.

        Args:
            from_: Narrow the accepted source states. Each must be a legal
                source of ``target``.
            strict: Raise ``InvalidTransition`` instead of returning None
                when the job is not in an accepted state.
            metadata: Extra payload for the ``JobStatusChanged`` event.
            **fields: Additional columns written in the same UPDATE.

        Returns:
            The updated job, or None when the transition did not apply.
        """
        sources = sources_of(target)
        if from_ is not None:
            requested = frozenset(from_)
            if illegal := requested - sources:
                raise InvalidTransition(job_id, min(illegal), target)
            sources = requested

        updated = (
            self.store.update_job(job_id, when_status=sources, status=target, **fields)
            if sources else None
        )
        if updated is None:
            current = self.store.require_job(job_id)
            if strict:
                raise InvalidTransition(job_id, current.status, target)
            self.log.debug(
                "Job {job}: skip {current} -> {target}",
                job=job_id, current=current.status, target=target,
            )
            return None

        self.log.bind(job_id=job_id).info("Job {job} -> {status}", job=job_id, status=target)
        self.events.publish(JobStatusChanged(job_id=job_id, status=target, metadata=metadata or {}))
        return updated


class Command(Protocol):
    job_id: str

    def run(self, machine: JobMachine) -> Any: ...


# =============================================================================
# Commands
# =============================================================================


@dataclass(frozen=True, slots=True)
class StartProvisioning:
    job_id: str

    def run(self, machine: JobMachine) -> TrainingJob | None:
        return machine.transition(self.job_id, JobStatus.PROVISIONING)


@dataclass(frozen=True, slots=True)
class PromoteToRunning:
    """provisioning -> running. Stamps ``started_at``; from then on no refund applies."""

    job_id: str
    instance_id: str | None = None

    def run(self, machine: JobMachine) -> TrainingJob | None:
        return machine.transition(
            self.job_id,
            JobStatus.RUNNING,
            from_=(JobStatus.PROVISIONING,),
            started_at=machine.now(),
            metadata={"instance_id": self.instance_id} if self.instance_id else None,
        )


@dataclass(frozen=True, slots=True)
class PauseJob:
    job_id: str
    reason: str

    def run(self, machine: JobMachine) -> TrainingJob | None:
        return machine.transition(
            self.job_id,
            JobStatus.PAUSED,
            from_=(JobStatus.RUNNING,),
            pause_reason=self.reason,
            metadata={"reason": self.reason},
        )


@dataclass(frozen=True, slots=True)
class ResumeJob:
    job_id: str

    def run(self, machine: JobMachine) -> TrainingJob | None:
        return machine.transition(
            self.job_id,
            JobStatus.RUNNING,
            from_=(JobStatus.PAUSED,),
            strict=True,
            pause_reason=None,
        )


@dataclass(frozen=True, slots=True)
class ApplyRefund:
    """Refund every charged token of a job that never ran. At most once per job."""

    job_id: str
    reason: str = "failed"

    def run(self, machine: JobMachine) -> int:
        tokens = machine.store.claim_refund(self.job_id)
        if tokens <= 0:
            return 0
        job = machine.store.require_job(self.job_id)
        original = machine.billing.find_charge(self.job_id)
        machine.billing.refund(
            job.owner_id,
            tokens,
            f"Refund for {self.reason} training job: {job.job_name}",
            original.id if original is not None else None,
            job_id=self.job_id,
        )
        return tokens


@dataclass(frozen=True, slots=True)
class FailJob:
    job_id: str
    error: str

    def run(self, machine: JobMachine) -> TrainingJob | None:
        job = machine.transition(
            self.job_id,
            JobStatus.FAILED,
            error_message=self.error,
            failed_at=machine.now(),
            metadata={"error": self.error},
        )
        if job is not None:
            machine.log.bind(job_id=self.job_id).error(
                "Job {job} failed: {error}", job=self.job_id, error=self.error,
            )
            if not job.has_run:
                ApplyRefund(self.job_id, "failed").run(machine)
                job = machine.store.require_job(self.job_id)
        return job


@dataclass(frozen=True, slots=True)
class CancelJob:
    job_id: str

    def run(self, machine: JobMachine) -> TrainingJob | None:
        job = machine.transition(self.job_id, JobStatus.CANCELLED, completed_at=machine.now())
        if job is not None and not job.has_run:
            ApplyRefund(self.job_id, "cancelled").run(machine)
            job = machine.store.require_job(self.job_id)
        return job


@dataclass(frozen=True, slots=True)
class SettleCompletion:
    """running -> completed with final cost and runtime.

    Runtime is whole minutes from ``started_at`` to now; cost is ``hourly_cost x hours`` plus
    the platform fee. Settled figures never lower what was already accrued.
    Terminating the instance is left to the caller.
    """

    job_id: str
    instance_id: str

    def run(self, machine: JobMachine) -> TrainingJob | None:
        job = machine.store.require_job(self.job_id)
        instance = machine.store.require_instance(self.instance_id)
        now = machine.now()

        elapsed = max(0.0, now - (job.started_at or now))
        minutes = math.floor(elapsed / 60)
        vast_cost = instance.hourly_cost * (minutes / 60)
        total = vast_cost * (1 + machine.platform_fee_rate)

        completed = machine.transition(
            self.job_id,
            JobStatus.COMPLETED,
            from_=(JobStatus.RUNNING,),
            completed_at=now,
            progress=100.0,
            runtime_minutes=max(minutes, job.runtime_minutes),
            cost_incurred=max(total, job.cost_incurred),
            metadata={"cost": round(max(total, job.cost_incurred), 4), "runtime_minutes": minutes},
        )
        if completed is not None:
            machine.store.settle_instance_cost(
                self.instance_id, total_cost=vast_cost, runtime_minutes=minutes,
            )
        return completed


__all__ = [
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    "ApplyRefund",
    "CancelJob",
    "Command",
    "FailJob",
    "JobMachine",
    "PauseJob",
    "PromoteToRunning",
    "ResumeJob",
    "SettleCompletion",
    "StartProvisioning",
    "can_transition",
    "sources_of",
]
