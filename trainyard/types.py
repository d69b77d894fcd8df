"""Record and value types shared across trainyard.

Records (``TrainingJob``, ``Instance``, ``BillingTransaction``) are immutable
snapshots read from the store. Every tick reloads them; mutation goes
through the store's conditional updates, never through attribute
assignment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class JobStatus(StrEnum):
    QUEUED = "queued"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InstanceStatus(StrEnum):
    PROVISIONING = "provisioning"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    TERMINATED = "terminated"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class TransactionType(StrEnum):
    CHARGE = "charge"
    CREDIT = "credit"
    REFUND = "refund"


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True, slots=True)
class TrainingJob:
    """A user's training request and its lifecycle state."""

    id: str
    owner_id: str
    project_id: str
    job_name: str
    task_type: str
    base_model: str
    config: dict[str, Any] = field(default_factory=dict)
    hyperparameters: dict[str, Any] = field(default_factory=dict)
    max_runtime_hours: float = 24.0
    dataset_id: str | None = None
    instance_id: str | None = None
    status: JobStatus = JobStatus.QUEUED
    cost_estimate: float = 0.0
    cost_incurred: float = 0.0
    tokens_used: int = 0
    tokens_refunded: int = 0
    progress: float = 0.0
    current_epoch: int | None = None
    current_step: int | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    runtime_minutes: int = 0
    error_message: str | None = None
    pause_reason: str | None = None
    created_at: float = 0.0
    started_at: float | None = None
    completed_at: float | None = None
    failed_at: float | None = None

    @property
    def gpu_type(self) -> str | None:
        return self.config.get("gpu_type")

    @property
    def has_run(self) -> bool:
        """Whether the job ever entered ``running``."""
        return self.started_at is not None


@dataclass(frozen=True, slots=True)
class Instance:
    """A rented marketplace instance as tracked locally."""

    id: str
    contract_id: str
    owner_id: str
    job_id: str | None = None
    offer_id: str | None = None
    machine_id: str | None = None
    gpu_name: str | None = None
    gpu_count: int = 1
    region: str | None = None
    status: InstanceStatus = InstanceStatus.PROVISIONING
    health_status: HealthStatus = HealthStatus.UNKNOWN
    hourly_cost: float = 0.0
    total_cost: float = 0.0
    runtime_minutes: int = 0
    auto_terminate: bool = True
    max_idle_minutes: int = 30
    ssh_host: str | None = None
    ssh_port: int | None = None
    ssh_user: str = "root"
    console_url: str | None = None
    last_health_check: float | None = None
    created_at: float = 0.0
    updated_at: float = 0.0
    terminated_at: float | None = None

    @property
    def has_endpoint(self) -> bool:
        return bool(self.ssh_host and self.ssh_port)


@dataclass(frozen=True, slots=True)
class BillingTransaction:
    """Immutable ledger entry."""

    id: str
    owner_id: str
    type: TransactionType
    tokens: int
    amount: float
    description: str
    job_id: str | None = None
    vast_cost: float = 0.0
    platform_fee: float = 0.0
    balance_after: int | None = None
    original_transaction_id: str | None = None
    created_at: float = 0.0


# =============================================================================
# Marketplace values
# =============================================================================


@dataclass(frozen=True, slots=True)
class SearchCriteria:
    """Constraints for an offer search."""

    gpu_name: str | None = None
    gpu_count: int | None = None
    max_price: float | None = None
    min_ram_gb: float | None = None
    region: str | None = None
    verified_only: bool = True


@dataclass(frozen=True, slots=True)
class Offer:
    """A priced, rentable configuration returned by a search."""

    id: str
    machine_id: str | None
    gpu_name: str
    num_gpus: int
    dph_total: float
    cpu_cores: int = 0
    cpu_ram_gb: float = 0.0
    gpu_ram_gb: float = 0.0
    disk_space_gb: float = 0.0
    reliability: float = 0.0
    geolocation: str | None = None
    verified: bool = False


@dataclass(frozen=True, slots=True)
class LiveStatus:
    """Provider's view of an instance at one point in time.

    ``status`` is the raw provider string (``loading``, ``running``,
    ``exited``, ...); ``trainyard.marketplace.normalize_status`` maps it
    onto ``InstanceStatus``.
    """

    status: str
    ssh_host: str | None = None
    ssh_port: int | None = None
    console_url: str | None = None
    error: str | None = None
    hourly_cost: float | None = None


@dataclass(frozen=True, slots=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True, slots=True)
class JobLogEntry:
    """One line of a job's training log, as reported by the trainer or the platform."""

    job_id: str
    message: str
    level: str = "info"
    source: str = "training"
    created_at: float = 0.0


@dataclass(frozen=True, slots=True)
class CostEstimate:
    """Output of the cost estimator. Monetary values are USD."""

    cost: float
    vast_cost: float
    platform_fee: float
    tokens: int
    estimated_hours: float
    cost_per_hour: float


@dataclass(frozen=True, slots=True)
class PricingEstimate:
    """Price spread over the cheapest matching offers."""

    gpu_type: str
    gpu_count: int
    hours: float
    offers_considered: int
    min_hourly: float
    max_hourly: float
    avg_hourly: float

    @property
    def min_total(self) -> float:
        return self.min_hourly * self.hours

    @property
    def max_total(self) -> float:
        return self.max_hourly * self.hours

    @property
    def avg_total(self) -> float:
        return self.avg_hourly * self.hours


__all__ = [
    "BillingTransaction",
    "CostEstimate",
    "ExecResult",
    "HealthStatus",
    "Instance",
    "InstanceStatus",
    "JobLogEntry",
    "JobStatus",
    "LiveStatus",
    "Offer",
    "PricingEstimate",
    "SearchCriteria",
    "TrainingJob",
    "TransactionType",
]
