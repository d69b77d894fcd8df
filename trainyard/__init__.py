"""trainyard - run training jobs on rented marketplace GPUs.

Example:

    from injector import Injector
    from trainyard import JobRequest, Orchestrator, TrainyardModule, load_settings

    injector = Injector([TrainyardModule(load_settings())])
    orchestrator = injector.get(Orchestrator)

    job = orchestrator.submit(JobRequest(
        owner_id="user-1",
        project_id="proj-1",
        job_name="sentiment",
        task_type="text_classification",
        base_model="bert-base",
        config={"epochs": 3, "gpu_type": "RTX 3090"},
    ))

The job is then picked up by a worker (``python -m trainyard.worker``).
"""

# Billing
from trainyard.billing import Billing, SqliteLedger

# Configuration
from trainyard.config import PolicySettings, Settings, SSHSettings, VastSettings, load_settings

# Reconcilers
from trainyard.cost_tracker import CostTracker

# Errors
from trainyard.errors import (
    InstanceFailed,
    InstanceStartupTimeout,
    InstanceUnavailable,
    InsufficientBalance,
    InvalidTransition,
    NoOffersAvailable,
    ProviderError,
    ProviderUnavailable,
    TrainingLaunchFailed,
    TrainyardError,
)

# Cost estimation
from trainyard.estimator import estimate

# Events (ADT)
from trainyard.events import EventBus, InstanceStatusChanged, JobLog, JobProgress, JobStatusChanged

# State machine
from trainyard.machine import JobMachine

# Marketplace
from trainyard.marketplace import Marketplace, VastClient, VastMarketplace

# DI
from trainyard.module import TrainyardModule
from trainyard.monitor import InstanceMonitor

# Orchestration
from trainyard.orchestrator import JobRequest, Orchestrator
from trainyard.scheduler import Scheduler
from trainyard.store import Store

# Types
from trainyard.types import (
    BillingTransaction,
    CostEstimate,
    HealthStatus,
    Instance,
    InstanceStatus,
    JobLogEntry,
    JobStatus,
    Offer,
    SearchCriteria,
    TrainingJob,
)

__version__ = "0.1.0"

__all__ = [
    "Billing",
    "BillingTransaction",
    "CostEstimate",
    "CostTracker",
    "EventBus",
    "HealthStatus",
    "Instance",
    "InstanceFailed",
    "InstanceMonitor",
    "InstanceStartupTimeout",
    "InstanceStatus",
    "InstanceStatusChanged",
    "InstanceUnavailable",
    "InsufficientBalance",
    "InvalidTransition",
    "JobLog",
    "JobLogEntry",
    "JobMachine",
    "JobProgress",
    "JobRequest",
    "JobStatus",
    "JobStatusChanged",
    "Marketplace",
    "NoOffersAvailable",
    "Offer",
    "Orchestrator",
    "PolicySettings",
    "ProviderError",
    "ProviderUnavailable",
    "SSHSettings",
    "Scheduler",
    "SearchCriteria",
    "Settings",
    "SqliteLedger",
    "Store",
    "TrainingJob",
    "TrainingLaunchFailed",
    "TrainyardError",
    "TrainyardModule",
    "VastClient",
    "VastMarketplace",
    "VastSettings",
    "estimate",
    "load_settings",
]
