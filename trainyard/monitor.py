"""Instance Monitor: recurring reconciler of one instance against the provider.

Each tick reloads the instance, pulls the provider's live status and
drives local state from it:

- ``running``: promote a provisioning job, make sure cost tracking runs;
- ``stopped``/``exited``: settle and complete a running job, then terminate;
- ``error``/``failed``: fail the attached job with the provider's error.

Then it applies the idle-termination policy and an advisory reachability
check. Health never fails a job; only provider-reported statuses do.
A tick on an unchanged live status writes the same state again.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from loguru import logger

from trainyard.config import PolicySettings
from trainyard.cost_tracker import ensure_cost_tracking
from trainyard.events import EventSink, InstanceStatusChanged, NullSink
from trainyard.machine import FailJob, JobMachine, PromoteToRunning, SettleCompletion
from trainyard.marketplace.service import Marketplace, normalize_status
from trainyard.scheduler import Payload, Scheduler, TickOutcome
from trainyard.store import Store
from trainyard.types import (
    HealthStatus,
    Instance,
    InstanceStatus,
    JobStatus,
    LiveStatus,
    TrainingJob,
)

MONITOR_INSTANCE = "monitor_instance"

STOPPED_WHILE_PAUSED = "Instance stopped while job was paused"
STOPPED_BEFORE_START = "Instance stopped before training started"


def monitor_key(instance_id: str) -> str:
    return f"monitor:{instance_id}"


def ensure_monitoring(scheduler: Scheduler, instance: Instance, *, period: float) -> bool:
    """Register the monitor tick for ``instance`` unless already registered."""
    return scheduler.schedule_recurring(
        MONITOR_INSTANCE,
        {"instance_id": instance.id},
        period=period,
        dedup_key=monitor_key(instance.id),
        job_id=instance.job_id,
    ) is not None


class InstanceMonitor:
    def __init__(
        self,
        store: Store,
        machine: JobMachine,
        marketplace: Marketplace,
        scheduler: Scheduler,
        *,
        policy: PolicySettings,
        events: EventSink | None = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._machine = machine
        self._marketplace = marketplace
        self._scheduler = scheduler
        self._policy = policy
        self._events = events or NullSink()
        self._now = now
        self._log = logger.bind(component="monitor")

    async def tick_task(self, payload: Payload) -> TickOutcome:
        return await self.tick(payload["instance_id"])

    async def tick(self, instance_id: str) -> TickOutcome:
        instance = self._store.get_instance(instance_id)
        if instance is None:
            self._log.warning("Instance {iid} not found, stopping monitor", iid=instance_id)
            return TickOutcome.STOP
        if instance.status is InstanceStatus.TERMINATED:
            self._log.debug("Instance {iid} terminated, stopping monitor", iid=instance_id)
            return TickOutcome.STOP

        try:
            return await self._reconcile(instance)
        except Exception:
            self._store.update_instance(
                instance_id,
                health_status=HealthStatus.UNHEALTHY,
                last_health_check=self._now(),
            )
            raise

    async def _reconcile(self, instance: Instance) -> TickOutcome:
        log = self._log.bind(instance_id=instance.id, contract_id=instance.contract_id)

        live = await self._marketplace.get_status(instance.contract_id)
        if live is None:
            log.warning("No live status for instance {iid}, skipping tick", iid=instance.id)
            return TickOutcome.CONTINUE

        observed = normalize_status(live.status)
        if observed is None:
            log.debug("Unrecognized provider status {status!r}", status=live.status)
        else:
            instance = self._sync(instance, observed, live)
            if instance.status is InstanceStatus.TERMINATED:
                return TickOutcome.STOP

            match observed:
                case InstanceStatus.RUNNING:
                    self._on_running(instance)
                case InstanceStatus.STOPPED:
                    if await self._on_stopped(instance):
                        return TickOutcome.STOP
                case InstanceStatus.FAILED:
                    if await self._on_failed(instance, live):
                        return TickOutcome.STOP

        if await self._idle_check(instance):
            return TickOutcome.STOP
        await self._health_check(instance)
        return TickOutcome.CONTINUE

    # -------------------------------------------------------------------------
    # Status sync
    # -------------------------------------------------------------------------

    def _sync(self, instance: Instance, observed: InstanceStatus, live: LiveStatus) -> Instance:
        endpoint_changed = (
            (live.ssh_host, live.ssh_port) != (instance.ssh_host, instance.ssh_port)
            and live.ssh_host is not None
        )
        if observed is instance.status and not endpoint_changed:
            return instance

        now = self._now()
        updates: dict[str, object] = {
            "status": observed,
            "ssh_host": live.ssh_host,
            "ssh_port": live.ssh_port,
            "console_url": live.console_url,
            "last_health_check": now,
        }
        if observed is InstanceStatus.FAILED:
            updates["health_status"] = HealthStatus.UNHEALTHY
        # cost accrues from the moment the instance is first seen running
        if observed is InstanceStatus.RUNNING and instance.status is not InstanceStatus.RUNNING:
            updates["updated_at"] = now

        updated = self._store.update_instance(instance.id, **updates)
        if updated is None:
            return self._store.require_instance(instance.id)

        if observed is not instance.status:
            self._log.bind(instance_id=instance.id).info(
                "Instance {iid} status changed: {old} -> {new}",
                iid=instance.id, old=instance.status, new=observed,
            )
            self._events.publish(InstanceStatusChanged(
                instance_id=updated.id, job_id=updated.job_id, status=updated.status,
            ))
        return updated

    def _job(self, instance: Instance) -> TrainingJob | None:
        return self._store.get_job(instance.job_id) if instance.job_id else None

    def _on_running(self, instance: Instance) -> None:
        job = self._job(instance)
        if job is not None and job.status is JobStatus.PROVISIONING:
            self._machine.execute(PromoteToRunning(job.id, instance.id))
        ensure_cost_tracking(self._scheduler, instance, period=self._policy.cost_period)

    async def _on_stopped(self, instance: Instance) -> bool:
        """Finalize the attached job. True when the instance was terminated."""
        job = self._job(instance)
        if job is None:
            return False

        match job.status:
            case JobStatus.RUNNING:
                self._machine.execute(SettleCompletion(job.id, instance.id))
            case JobStatus.PAUSED:
                self._machine.execute(FailJob(job.id, STOPPED_WHILE_PAUSED))
            case JobStatus.PROVISIONING:
                self._machine.execute(FailJob(job.id, STOPPED_BEFORE_START))
            case _:
                pass

        await self._marketplace.terminate(instance.contract_id)
        return True

    async def _on_failed(self, instance: Instance, live: LiveStatus) -> bool:
        job = self._job(instance)
        error = f"Instance failed: {live.error or 'Unknown error'}"
        self._log.bind(instance_id=instance.id).error(
            "Instance {iid} failed: {error}", iid=instance.id, error=live.error or "Unknown error",
        )
        if job is None:
            return False
        if job.status in (JobStatus.PROVISIONING, JobStatus.RUNNING, JobStatus.PAUSED):
            self._machine.execute(FailJob(job.id, error))
        await self._marketplace.terminate(instance.contract_id)
        return True

    # -------------------------------------------------------------------------
    # Idle & health
    # -------------------------------------------------------------------------

    def idle_seconds(self, instance: Instance) -> float:
        last_activity = max(instance.last_health_check or 0.0, instance.updated_at)
        return self._now() - last_activity

    async def _idle_check(self, instance: Instance) -> bool:
        if not instance.auto_terminate or instance.status is not InstanceStatus.RUNNING:
            return False

        idle = self.idle_seconds(instance)
        if idle <= instance.max_idle_minutes * 60:
            return False

        job = self._job(instance)
        if job is not None and job.status in (JobStatus.RUNNING, JobStatus.PAUSED):
            return False

        self._log.bind(instance_id=instance.id).info(
            "Terminating idle instance {iid} (idle for {minutes:.1f} minutes)",
            iid=instance.id, minutes=idle / 60,
        )
        await self._marketplace.terminate(instance.contract_id)
        return True

    async def _health_check(self, instance: Instance) -> None:
        if instance.status is not InstanceStatus.RUNNING or not instance.has_endpoint:
            return

        healthy = await self._marketplace.test_reachability(
            instance.ssh_host or "", instance.ssh_port or 22, self._policy.health_timeout,
        )
        if healthy:
            self._store.update_instance(
                instance.id, health_status=HealthStatus.HEALTHY, last_health_check=self._now(),
            )
            return

        if instance.health_status is not HealthStatus.UNHEALTHY:
            self._log.bind(instance_id=instance.id).warning(
                "Instance {iid} failed health check", iid=instance.id,
            )
        self._store.update_instance(instance.id, health_status=HealthStatus.UNHEALTHY)


__all__ = [
    "MONITOR_INSTANCE",
    "STOPPED_BEFORE_START",
    "STOPPED_WHILE_PAUSED",
    "InstanceMonitor",
    "ensure_monitoring",
    "monitor_key",
]
