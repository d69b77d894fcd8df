"""Provisioning Orchestrator.

Drives a queued job to a running remote workload:

    queued -> provisioning -> (charge, search, create, wait, launch) -> running

Every step is a commit point persisted in the store. A failure anywhere
between charging and launching fails the job; the state machine refunds
the charge because the job never ran, and any instance already created is
terminated. Cancellation can land at any moment: waits are interrupted
through the job's ``WaitContext`` and the job status is re-checked before
charging and after creating the instance.

Example:
    job = orchestrator.submit(JobRequest(
        owner_id="user-1", project_id="proj-1", job_name="sentiment",
        task_type="text_classification", base_model="bert-base",
        config={"epochs": 3, "gpu_type": "RTX 3090"},
    ))
    # the scheduler then runs PROCESS_JOB -> orchestrator.process(job.id)
"""

from __future__ import annotations

import json
import math
import shlex
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from trainyard import estimator
from trainyard.billing import Billing
from trainyard.config import PolicySettings, VastSettings
from trainyard.context import ContextRegistry, WaitContext, wait_for_ready
from trainyard.cost_tracker import ensure_cost_tracking
from trainyard.errors import (
    BudgetExceeded,
    InstanceFailed,
    InstanceStartupTimeout,
    InstanceUnavailable,
    InsufficientBalance,
    InvalidTransition,
    JobCancelled,
    NoOffersAvailable,
    TrainingLaunchFailed,
    TrainyardError,
)
from trainyard.events import EventSink, JobLog, JobProgress, JobStatusChanged, NullSink
from trainyard.machine import (
    CancelJob,
    FailJob,
    JobMachine,
    PromoteToRunning,
    ResumeJob,
    StartProvisioning,
)
from trainyard.marketplace.service import Marketplace, normalize_status
from trainyard.monitor import ensure_monitoring
from trainyard.retry import RetryPolicy, transient
from trainyard.scheduler import Payload, Scheduler
from trainyard.store import Store, new_id
from trainyard.types import (
    CostEstimate,
    Instance,
    InstanceStatus,
    JobLogEntry,
    JobStatus,
    Offer,
    SearchCriteria,
    TrainingJob,
)

PROCESS_JOB = "process_job"

DEFAULT_IMAGE = "pytorch/pytorch:latest"

DOCKER_IMAGES: dict[str, str] = {
    "text_classification": "aiplatform/text-training:latest",
    "text_generation": "aiplatform/llm-training:latest",
    "question_answering": "aiplatform/qa-training:latest",
    "named_entity_recognition": "aiplatform/ner-training:latest",
    "image_classification": "aiplatform/vision-training:latest",
    "custom": "aiplatform/custom-training:latest",
}

_INSTANCE_DEAD = frozenset({InstanceStatus.FAILED, InstanceStatus.STOPPED, InstanceStatus.TERMINATED})
_INSTANCE_BOOTING = (InstanceStatus.PROVISIONING, InstanceStatus.STARTING)


def docker_image(task_type: str) -> str:
    return DOCKER_IMAGES.get(task_type, DEFAULT_IMAGE)


def training_env(job: TrainingJob) -> dict[str, str]:
    return {
        "TASK_TYPE": job.task_type,
        "BASE_MODEL": job.base_model,
        "JOB_CONFIG": json.dumps(job.config, sort_keys=True),
        "HYPERPARAMETERS": json.dumps(job.hyperparameters, sort_keys=True),
        "TRAINING_JOB_ID": job.id,
        "USER_ID": job.owner_id,
    }


def training_command(job: TrainingJob, api_base_url: str) -> str:
    """Shell command that starts ``train.py`` detached, logging to the workspace."""
    args = [
        "python", "train.py",
        "--job-id", job.id,
        "--task-type", job.task_type,
        "--base-model", job.base_model,
        "--config", json.dumps(job.config, sort_keys=True),
        "--hyperparameters", json.dumps(job.hyperparameters, sort_keys=True),
        "--api-url", api_base_url,
    ]
    return (
        f"cd /workspace && nohup {shlex.join(args)} "
        "> /workspace/training.log 2>&1 &"
    )


def select_offer(offers: Sequence[Offer]) -> Offer:
    """Cheapest offer by total hourly price; the first one wins a tie."""
    if not offers:
        raise NoOffersAvailable()
    return min(offers, key=lambda o: o.dph_total)


@dataclass(frozen=True, slots=True)
class JobRequest:
    """A training submission."""

    owner_id: str
    project_id: str
    job_name: str
    task_type: str
    base_model: str
    config: dict[str, Any] = field(default_factory=dict)
    hyperparameters: dict[str, Any] = field(default_factory=dict)
    max_runtime_hours: float = 24.0
    dataset_id: str | None = None


class Orchestrator:
    """Submission, provisioning, cancellation, resume and progress for training jobs."""

    def __init__(
        self,
        store: Store,
        machine: JobMachine,
        billing: Billing,
        marketplace: Marketplace,
        scheduler: Scheduler,
        contexts: ContextRegistry,
        *,
        policy: PolicySettings,
        vast: VastSettings,
        api_base_url: str,
        events: EventSink | None = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._machine = machine
        self._billing = billing
        self._marketplace = marketplace
        self._scheduler = scheduler
        self._contexts = contexts
        self._policy = policy
        self._vast = vast
        self._api_base_url = api_base_url
        self._events = events or NullSink()
        self._now = now
        self._provider_retry = RetryPolicy(
            max_attempts=policy.provider_attempts,
            base_delay=policy.provider_backoff,
            retry_on=transient,
        )
        self._log = logger.bind(component="orchestrator")

    # =========================================================================
    # Submission
    # =========================================================================

    def estimate(self, job: TrainingJob | JobRequest) -> CostEstimate:
        return estimator.estimate(
            job.task_type,
            job.base_model,
            job.config,
            job.max_runtime_hours,
            job.config.get("gpu_type") or self._vast.default_gpu,
            platform_fee_rate=self._policy.platform_fee_rate,
            tokens_per_usd=self._policy.tokens_per_usd,
        )

    def submit(self, request: JobRequest) -> TrainingJob:
        """Persist a queued job and enqueue its processing."""
        estimate = self.estimate(request)
        job = self._store.insert_job(TrainingJob(
            id=new_id("job"),
            owner_id=request.owner_id,
            project_id=request.project_id,
            job_name=request.job_name,
            task_type=request.task_type,
            base_model=request.base_model,
            config=dict(request.config),
            hyperparameters=dict(request.hyperparameters),
            max_runtime_hours=request.max_runtime_hours,
            dataset_id=request.dataset_id,
            status=JobStatus.QUEUED,
            cost_estimate=estimate.cost,
            created_at=self._now(),
        ))
        self._scheduler.enqueue(
            PROCESS_JOB,
            {"job_id": job.id},
            job_id=job.id,
            max_attempts=self._policy.process_attempts,
        )
        self._log.bind(job_id=job.id).info(
            "Submitted job {job} ({task}, {model}), estimate ${cost:.2f} / {tokens} tokens",
            job=job.id, task=job.task_type, model=job.base_model,
            cost=estimate.cost, tokens=estimate.tokens,
        )
        self._events.publish(JobStatusChanged(job_id=job.id, status=JobStatus.QUEUED))
        return job

    # =========================================================================
    # Processing
    # =========================================================================

    async def process_task(self, payload: Payload) -> None:
        await self.process(payload["job_id"])

    async def process(self, job_id: str) -> TrainingJob | None:
        """Provision and launch ``job_id``.

        A job redelivered while ``provisioning`` with an instance already
        attached picks up at the readiness wait, so training is launched
        before the job is promoted. Jobs in any other status are left alone.
        """
        log = self._log.bind(job_id=job_id)
        job = self._store.get_job(job_id)
        if job is None:
            log.warning("Training job {job} not found", job=job_id)
            return None

        instance: Instance | None = None
        match job.status:
            case JobStatus.QUEUED:
                if self._machine.execute(StartProvisioning(job_id)) is None:
                    return self._store.require_job(job_id)
            case JobStatus.PROVISIONING if job.instance_id:
                log.warning(
                    "Job {job} redelivered mid-provisioning, finishing launch on {iid}",
                    job=job_id, iid=job.instance_id,
                )
                instance = self._store.get_instance(job.instance_id)
                if instance is None:
                    return self._machine.execute(
                        FailJob(job_id, f"Instance {job.instance_id} not found")
                    ) or self._store.require_job(job_id)
            case JobStatus.PROVISIONING:
                return self._machine.execute(
                    FailJob(job_id, "Provisioning interrupted before an instance was created")
                )
            case _:
                log.warning("Job {job} is not queued: {status}", job=job_id, status=job.status)
                return job

        resumed = instance is not None
        ctx = self._contexts.register(WaitContext(job_id=job_id))
        try:
            if instance is None:
                estimate = self.estimate(job)
                self._charge(job, estimate)

                offers = await self._provider_retry.call(
                    self._marketplace.search_offers, self._criteria(job), sleep=ctx.sleep,
                )
                offer = select_offer(offers)
                log.info(
                    "Selected offer {oid}: {gpu} x{n} at ${price:.3f}/h",
                    oid=offer.id, gpu=offer.gpu_name, n=offer.num_gpus, price=offer.dph_total,
                )

                self._require_provisioning(job_id)
                instance = await self._provider_retry.call(
                    self._marketplace.create_instance,
                    offer.id,
                    docker_image(job.task_type),
                    job.owner_id,
                    job.id,
                    training_env(job),
                    sleep=ctx.sleep,
                )
                if self._store.update_job(
                    job_id, when_status=(JobStatus.PROVISIONING,), instance_id=instance.id,
                ) is None:
                    raise JobCancelled(job_id)

            ready = await self._wait_ready(instance, refresh=resumed)
            self._require_provisioning(job_id)
            await self._launch(ready, job, ctx)

            running = self._machine.execute(PromoteToRunning(job_id, instance.id))
            if running is None:
                current = self._store.require_job(job_id)
                if current.status is not JobStatus.RUNNING:
                    raise JobCancelled(job_id)
                running = current

            ensure_cost_tracking(self._scheduler, ready, period=self._policy.cost_period)
            ensure_monitoring(self._scheduler, ready, period=self._policy.monitor_period)
            log.info("Training job {job} started on instance {iid}", job=job_id, iid=instance.id)
            return running

        except JobCancelled:
            log.info("Job {job} cancelled during provisioning", job=job_id)
            if instance is not None:
                await self._terminate_quietly(instance)
            return self._store.require_job(job_id)

        except Exception as e:
            failed = self._machine.execute(FailJob(job_id, str(e)))
            if failed is None:
                log.warning("Job {job} left provisioning before failure: {error}", job=job_id, error=e)
            if instance is not None:
                await self._terminate_quietly(instance)
            if not isinstance(e, TrainyardError):
                raise
            return self._store.require_job(job_id)

        finally:
            self._contexts.discard(ctx)

    def _criteria(self, job: TrainingJob) -> SearchCriteria:
        config = job.config
        return SearchCriteria(
            gpu_name=config.get("gpu_type") or self._vast.default_gpu,
            gpu_count=int(config.get("gpu_count") or 1),
            max_price=float(config.get("max_hourly_cost") or self._vast.default_max_hourly_cost),
            min_ram_gb=config.get("min_ram_gb"),
            region=config.get("region"),
            verified_only=self._vast.verified_only,
        )

    def _require_provisioning(self, job_id: str) -> None:
        if self._store.require_job(job_id).status is not JobStatus.PROVISIONING:
            raise JobCancelled(job_id)

    def _charge(self, job: TrainingJob, estimate: CostEstimate) -> None:
        """Charge the estimate upfront and record it on the job.

        If the job was cancelled between the status check and the charge,
        the charge is reversed here since the cancel saw nothing to refund.
        """
        self._require_provisioning(job.id)
        tx = self._billing.charge(
            job.owner_id,
            estimate.tokens,
            f"Training job: {job.job_name}",
            job.id,
            amount=estimate.cost,
            vast_cost=estimate.vast_cost,
            platform_fee=estimate.platform_fee,
        )
        updated = self._store.update_job(
            job.id,
            when_status=(JobStatus.PROVISIONING,),
            tokens_used=estimate.tokens,
            cost_estimate=estimate.cost,
        )
        if updated is not None:
            return

        self._billing.refund(
            job.owner_id,
            estimate.tokens,
            f"Refund for cancelled training job: {job.job_name}",
            tx.id,
            job_id=job.id,
        )
        current = self._store.require_job(job.id)
        self._store.update_job(job.id, tokens_refunded=current.tokens_refunded + estimate.tokens)
        raise JobCancelled(job.id)

    async def _load_instance(self, instance_id: str) -> Instance | None:
        return self._store.get_instance(instance_id)

    async def _refresh_instance(self, instance_id: str) -> Instance | None:
        """Stored instance, advanced from the provider's live status while still booting."""
        current = self._store.get_instance(instance_id)
        if current is None or current.status not in _INSTANCE_BOOTING:
            return current

        live = await self._marketplace.get_status(current.contract_id)
        observed = normalize_status(live.status) if live is not None else None
        if live is None or observed is None or observed is current.status:
            return current

        updates: dict[str, Any] = {
            "status": observed,
            "ssh_host": live.ssh_host,
            "ssh_port": live.ssh_port,
            "console_url": live.console_url,
        }
        if observed is InstanceStatus.RUNNING:
            updates["updated_at"] = updates["last_health_check"] = self._now()
        updated = self._store.update_instance(instance_id, when_status=_INSTANCE_BOOTING, **updates)
        return updated or self._store.get_instance(instance_id)

    async def _wait_ready(self, instance: Instance, *, refresh: bool = False) -> Instance:
        """Poll until the instance is running with an endpoint.

        Normally the marketplace's startup watcher advances the stored
        instance. With ``refresh`` the provider is asked directly, for
        instances whose watcher did not survive a restart.
        """
        poll = self._refresh_instance if refresh else self._load_instance
        ctx = self._contexts.register(
            WaitContext.with_timeout(self._policy.startup_timeout, job_id=instance.job_id)
        )
        try:
            return await wait_for_ready(
                lambda: poll(instance.id),
                lambda i: i.status is InstanceStatus.RUNNING and i.has_endpoint,
                ctx=ctx,
                terminal_error=lambda i: InstanceFailed(i.id) if i.status in _INSTANCE_DEAD else None,
                interval=self._policy.startup_poll_interval,
                description=f"instance {instance.id}",
            )
        except TimeoutError as e:
            raise InstanceStartupTimeout(instance.id, self._policy.startup_timeout) from e
        finally:
            self._contexts.discard(ctx)

    async def _launch(self, instance: Instance, job: TrainingJob, ctx: WaitContext) -> None:
        result = await self._provider_retry.call(
            self._marketplace.exec,
            instance.id,
            training_command(job, self._api_base_url),
            sleep=ctx.sleep,
        )
        if not result.ok:
            raise TrainingLaunchFailed(result.exit_code, result.stderr)

    async def _terminate_quietly(self, instance: Instance) -> None:
        try:
            await self._marketplace.terminate(instance.contract_id)
        except TrainyardError as e:
            self._log.bind(job_id=instance.job_id, instance_id=instance.id).warning(
                "Failed to terminate instance {iid}: {error}", iid=instance.id, error=e,
            )

    # =========================================================================
    # User operations
    # =========================================================================

    async def cancel(self, job_id: str) -> TrainingJob:
        """Cancel ``job_id``: mark cancelled, refund if it never ran, stop its work.

        Raises:
            InvalidTransition: The job is already terminal.
        """
        log = self._log.bind(job_id=job_id)
        before = self._store.require_job(job_id)
        cancelled = self._machine.execute(CancelJob(job_id))
        if cancelled is None:
            current = self._store.require_job(job_id)
            raise InvalidTransition(job_id, current.status, JobStatus.CANCELLED)

        interrupted = self._contexts.cancel(job_id)
        removed = self._scheduler.remove_pending(job_id)
        log.info(
            "Cancelled job {job} (was {status}; {waits} wait(s) interrupted, {tasks} task(s) removed)",
            job=job_id, status=before.status, waits=interrupted, tasks=removed,
        )

        if cancelled.instance_id:
            instance = self._store.get_instance(cancelled.instance_id)
            if instance is not None and instance.status is not InstanceStatus.TERMINATED:
                await self._terminate_quietly(instance)
        return self._store.require_job(job_id)

    def resume(self, job_id: str) -> TrainingJob:
        """Move a paused job back to running.

        Raises:
            InvalidTransition: The job is not paused.
            InsufficientBalance: The owner's balance is below the low-balance floor.
            BudgetExceeded: Incurred cost is still past the pause ratio.
            InstanceUnavailable: The job's instance is no longer running.
        """
        job = self._store.require_job(job_id)
        if job.status is not JobStatus.PAUSED:
            raise InvalidTransition(job_id, job.status, JobStatus.RUNNING)

        balance = self._billing.balance(job.owner_id)
        if balance < self._policy.low_balance_floor:
            raise InsufficientBalance(job.owner_id, self._policy.low_balance_floor, balance)

        if job.cost_estimate > 0:
            ratio = job.cost_incurred / job.cost_estimate
            if ratio > self._policy.pause_ratio:
                raise BudgetExceeded(job_id, ratio, self._policy.pause_ratio)

        instance = self._store.get_instance(job.instance_id) if job.instance_id else None
        if instance is None or instance.status is not InstanceStatus.RUNNING:
            raise InstanceUnavailable(job.instance_id or "")

        resumed = self._machine.execute(ResumeJob(job_id))
        self._log.bind(job_id=job_id).info("Resumed job {job}", job=job_id)
        return resumed

    def update_progress(
        self,
        job_id: str,
        progress: float,
        metrics: Mapping[str, Any] | None = None,
    ) -> TrainingJob | None:
        """Record progress reported by the training process. Ignored unless the job is live."""
        metrics = dict(metrics or {})
        job = self._store.require_job(job_id)

        updates: dict[str, Any] = {"progress": max(0.0, min(100.0, float(progress)))}
        if (epoch := metrics.get("epoch")) is not None:
            updates["current_epoch"] = int(epoch)
        if (step := metrics.get("step")) is not None:
            updates["current_step"] = int(step)
        if metrics:
            updates["metrics"] = {**job.metrics, **metrics}

        updated = self._store.update_job(
            job_id, when_status=(JobStatus.RUNNING, JobStatus.PAUSED), **updates,
        )
        if updated is None:
            self._log.debug("Ignoring progress for {job} in {status}", job=job_id, status=job.status)
            return None
        self._events.publish(JobProgress(job_id=job_id, progress=updated.progress, metrics=metrics))
        return updated

    def job_metrics(self, job_id: str) -> dict[str, Any]:
        job = self._store.require_job(job_id)
        if job.started_at is None:
            runtime = 0
        else:
            end = job.completed_at or job.failed_at or self._now()
            runtime = max(job.runtime_minutes, math.floor((end - job.started_at) / 60))
        return {
            "status": job.status.value,
            "progress": job.progress,
            "current_epoch": job.current_epoch,
            "current_step": job.current_step,
            "metrics": dict(job.metrics),
            "cost_estimate": job.cost_estimate,
            "cost_incurred": job.cost_incurred,
            "runtime_minutes": runtime,
        }

    def add_log(
        self,
        job_id: str,
        message: str,
        level: str = "info",
        source: str = "training",
    ) -> JobLogEntry:
        """Append a line to the job's log and publish it to the job's subscribers.

        Only the latest ``PolicySettings.job_log_lines`` lines are kept.
        """
        self._store.require_job(job_id)
        entry = JobLogEntry(
            job_id=job_id, message=message, level=level, source=source, created_at=self._now(),
        )
        self._store.append_job_log(entry, keep=self._policy.job_log_lines)
        self._events.publish(JobLog(
            job_id=job_id, message=message, level=level, source=source, created_at=entry.created_at,
        ))
        return entry

    def job_logs(self, job_id: str, lines: int = 100) -> list[JobLogEntry]:
        """The latest ``lines`` log lines of ``job_id``, oldest first."""
        self._store.require_job(job_id)
        return self._store.job_logs(job_id, limit=max(0, lines))


__all__ = [
    "DEFAULT_IMAGE",
    "DOCKER_IMAGES",
    "PROCESS_JOB",
    "JobRequest",
    "Orchestrator",
    "docker_image",
    "select_offer",
    "training_command",
    "training_env",
]
