"""Structured retry policy with exponential backoff.

A ``RetryPolicy`` bundles max attempts, the backoff function and the
retryable-error predicate. The scheduler uses one to re-run failed task
deliveries; the orchestrator uses one around marketplace search/create.

Example:
    from trainyard.retry import RetryPolicy, transient

    policy = RetryPolicy(max_attempts=3, base_delay=1.0, retry_on=transient)
    offers = await policy.call(marketplace.search_offers, criteria)
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeAlias, TypeVar

from loguru import logger

from trainyard.errors import ProviderUnavailable

RetryPredicate: TypeAlias = Callable[[BaseException], bool]
Sleep: TypeAlias = Callable[[float], Awaitable[None]]

T = TypeVar("T")


def transient(e: BaseException) -> bool:
    """Retry only marketplace transport failures."""
    return isinstance(e, ProviderUnavailable)


def always(_: BaseException) -> bool:
    return True


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded attempts with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (including the first one).
        base_delay: Delay in seconds before the first retry.
        exponential_base: Multiplier per attempt.
            Delay formula: min(base_delay * (exponential_base ** attempt), max_delay)
        max_delay: Cap for a single delay.
        jitter: Add up to 10% random jitter.
        retry_on: Predicate deciding whether an error is retryable.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    exponential_base: float = 2.0
    max_delay: float = 300.0
    jitter: bool = False
    retry_on: RetryPredicate = field(default=always)

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based: first retry is 0)."""
        delay = min(self.base_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)
        return delay

    def should_retry(self, error: BaseException, attempts_made: int) -> bool:
        """Whether another attempt is allowed after ``attempts_made`` failures."""
        return attempts_made < self.max_attempts and self.retry_on(error)

    async def call(
        self,
        fn: Callable[..., Awaitable[T]],
        /,
        *args: object,
        sleep: Sleep = asyncio.sleep,
        **kwargs: object,
    ) -> T:
        attempt = 0
        while True:
            try:
                return await fn(*args, **kwargs)
            except Exception as e:
                attempt += 1
                if not self.should_retry(e, attempt):
                    raise
                delay = self.delay(attempt - 1)
                logger.bind(component="retry").warning(
                    "Retry {attempt}/{max} after {kind}: {error}. Waiting {delay:.1f}s",
                    attempt=attempt, max=self.max_attempts,
                    kind=type(e).__name__, error=e, delay=delay,
                )
                await sleep(delay)


__all__ = [
    "RetryPolicy",
    "RetryPredicate",
    "always",
    "transient",
]
