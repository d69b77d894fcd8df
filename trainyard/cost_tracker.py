"""Per-instance cost accrual and budget policy.

Each tick bills whole minutes elapsed since the instance's ``updated_at``
watermark, adds the platform fee on top for the attached job and appends
a usage entry to the ledger. Usage entries carry USD only: tokens were
prepaid when the job was charged its estimate.

Budget policy, applied to running jobs after each accrual:

- cost above ``warn_ratio`` x estimate: warning only;
- cost above ``pause_ratio`` x estimate: pause ("cost overrun");
- owner balance below ``low_balance_floor``: pause ("low token balance");
- owner balance at or below zero: pause ("insufficient token balance").

Pausing never stops the instance.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable

from loguru import logger

from trainyard.billing import Billing
from trainyard.config import PolicySettings
from trainyard.machine import JobMachine, PauseJob
from trainyard.scheduler import Payload, Scheduler, TickOutcome
from trainyard.store import Store
from trainyard.types import Instance, InstanceStatus, JobStatus, TrainingJob

TRACK_COST = "track_cost"

COST_OVERRUN = "cost overrun"
LOW_BALANCE = "low token balance"
NO_BALANCE = "insufficient token balance"


def cost_key(instance_id: str) -> str:
    return f"cost:{instance_id}"


def ensure_cost_tracking(scheduler: Scheduler, instance: Instance, *, period: float) -> bool:
    """Register the cost tick for ``instance`` unless already registered."""
    return scheduler.schedule_recurring(
        TRACK_COST,
        {"instance_id": instance.id},
        period=period,
        dedup_key=cost_key(instance.id),
        job_id=instance.job_id,
    ) is not None


class CostTracker:
    def __init__(
        self,
        store: Store,
        machine: JobMachine,
        billing: Billing,
        *,
        policy: PolicySettings,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._machine = machine
        self._billing = billing
        self._policy = policy
        self._now = now
        self._log = logger.bind(component="cost_tracker")

    async def tick_task(self, payload: Payload) -> TickOutcome:
        return await self.tick(payload["instance_id"])

    async def tick(self, instance_id: str) -> TickOutcome:
        instance = self._store.get_instance(instance_id)
        if instance is None:
            self._log.warning("Instance {iid} not found, stopping cost tracking", iid=instance_id)
            return TickOutcome.STOP
        if instance.status is InstanceStatus.TERMINATED:
            return TickOutcome.STOP
        if instance.status is not InstanceStatus.RUNNING:
            self._log.debug("Instance {iid} is {status}, skipping", iid=instance_id, status=instance.status)
            return TickOutcome.CONTINUE

        now = self._now()
        minutes = math.floor((now - instance.updated_at) / 60)
        if minutes < 1:
            return TickOutcome.CONTINUE

        increment = instance.hourly_cost / 60 * minutes
        accrued = self._store.accrue_instance_cost(
            instance_id,
            increment=increment,
            minutes=minutes,
            watermark=instance.updated_at,
            now=now,
        )
        if accrued is None:
            self._log.debug("Instance {iid} accrued concurrently, skipping", iid=instance_id)
            return TickOutcome.CONTINUE

        if instance.job_id is None:
            return TickOutcome.CONTINUE

        fee = increment * self._policy.platform_fee_rate
        job = self._store.add_job_cost(
            instance.job_id, increment + fee, when_status=(JobStatus.RUNNING, JobStatus.PAUSED),
        )
        if job is None:
            return TickOutcome.CONTINUE

        self._billing.record_usage(
            job.owner_id,
            job.id,
            vast_cost=increment,
            platform_fee=fee,
            description=f"Runtime cost for {minutes} minutes",
        )
        self._log.bind(job_id=job.id, instance_id=instance_id).debug(
            "Cost tracked: ${amount:.4f} for job {job}", amount=increment + fee, job=job.id,
        )

        self.enforce_budget(job)
        return TickOutcome.CONTINUE

    def enforce_budget(self, job: TrainingJob) -> str | None:
        """Apply the budget policy. Returns the pause reason when the job was paused."""
        log = self._log.bind(job_id=job.id)
        reason: str | None = None

        if job.cost_estimate > 0:
            ratio = job.cost_incurred / job.cost_estimate
            if ratio > self._policy.warn_ratio:
                log.warning("Job {job} cost overrun: {pct:.1f}%", job=job.id, pct=ratio * 100)
            if ratio > self._policy.pause_ratio:
                reason = COST_OVERRUN

        balance = self._billing.balance(job.owner_id)
        if balance <= 0:
            reason = NO_BALANCE
        elif balance < self._policy.low_balance_floor:
            log.warning("Owner {owner} low token balance: {balance}", owner=job.owner_id, balance=balance)
            reason = LOW_BALANCE

        if reason is None or job.status is not JobStatus.RUNNING:
            return None

        paused = self._machine.execute(PauseJob(job.id, reason))
        if paused is None:
            return None
        log.warning("Job {job} auto-paused: {reason}", job=job.id, reason=reason)
        return reason


__all__ = [
    "COST_OVERRUN",
    "LOW_BALANCE",
    "NO_BALANCE",
    "TRACK_COST",
    "CostTracker",
    "cost_key",
    "ensure_cost_tracking",
]
