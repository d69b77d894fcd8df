"""Error taxonomy for the training-job lifecycle.

Job-terminal errors carry a message that is surfaced verbatim as the
job's ``error_message``. ``ProviderUnavailable`` is the only error the
retry policies treat as transient.
"""

from __future__ import annotations


class TrainyardError(Exception):
    """Base class for all trainyard errors."""


class ConfigError(TrainyardError):
    """Missing or malformed configuration."""


# =============================================================================
# Billing
# =============================================================================


class InsufficientBalance(TrainyardError):
    """Owner's token balance cannot cover a charge."""

    def __init__(self, owner_id: str, required: int, available: int) -> None:
        self.owner_id = owner_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient token balance: {required} tokens required, {available} available"
        )


class OwnerNotFound(TrainyardError):
    """No billing account exists for the owner."""

    def __init__(self, owner_id: str) -> None:
        self.owner_id = owner_id
        super().__init__(f"Billing account not found: {owner_id}")


class BudgetExceeded(TrainyardError):
    """Incurred cost is past the ratio of the estimate that allows running."""

    def __init__(self, job_id: str, ratio: float, limit: float) -> None:
        self.job_id = job_id
        self.ratio = ratio
        self.limit = limit
        super().__init__(f"Job {job_id} cost is {ratio:.0%} of its estimate (limit {limit:.0%})")


# =============================================================================
# Provider
# =============================================================================


class ProviderUnavailable(TrainyardError):
    """Transport-level failure talking to the marketplace. Retryable."""


class ProviderError(TrainyardError):
    """Marketplace rejected a command. Not retryable."""

    def __init__(self, message: str, status: int | None = None, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(message)


class NoOffersAvailable(TrainyardError):
    """Offer search matched nothing."""

    def __init__(self, message: str = "No suitable instances available") -> None:
        super().__init__(message)


# =============================================================================
# Instance lifecycle
# =============================================================================


class InstanceStartupTimeout(TrainyardError):
    """Instance did not become ready before the startup deadline."""

    def __init__(self, instance_id: str, timeout: float) -> None:
        self.instance_id = instance_id
        self.timeout = timeout
        super().__init__(f"Instance startup timeout after {timeout:.0f}s")


class InstanceFailed(TrainyardError):
    """Instance reached a failed state while starting."""

    def __init__(self, instance_id: str, reason: str = "Instance failed to start") -> None:
        self.instance_id = instance_id
        super().__init__(reason)


class InstanceUnavailable(TrainyardError):
    """Remote execution requested against an instance that is not running."""

    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id} is not available")


class TrainingLaunchFailed(TrainyardError):
    """Training start command exited non-zero."""

    def __init__(self, exit_code: int, stderr: str) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Training start failed (exit {exit_code}): {stderr.strip()}")


# =============================================================================
# Records and state machine
# =============================================================================


class JobNotFound(TrainyardError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Training job not found: {job_id}")


class InstanceNotFound(TrainyardError):
    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"Instance not found: {instance_id}")


class InvalidTransition(TrainyardError):
    """Requested job status change is not an edge of the state machine."""

    def __init__(self, job_id: str, current: str, target: str) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id}: illegal transition {current} -> {target}")


class JobCancelled(TrainyardError):
    """Raised inside a wait when the owning job was cancelled."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} was cancelled")


__all__ = [
    "BudgetExceeded",
    "ConfigError",
    "InstanceFailed",
    "InstanceNotFound",
    "InstanceStartupTimeout",
    "InstanceUnavailable",
    "InsufficientBalance",
    "InvalidTransition",
    "JobCancelled",
    "JobNotFound",
    "NoOffersAvailable",
    "OwnerNotFound",
    "ProviderError",
    "ProviderUnavailable",
    "TrainingLaunchFailed",
    "TrainyardError",
]
