from __future__ import annotations

import pytest

from trainyard.errors import ProviderError, ProviderUnavailable
from trainyard.retry import RetryPolicy, always, transient

pytestmark = [pytest.mark.unit]


class Flaky:
    def __init__(self, failures: list[Exception], result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self, *args: object, **kwargs: object) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class TestPolicy:
    def test_exponential_delay(self):
        policy = RetryPolicy(base_delay=2.0, exponential_base=2.0, max_delay=10.0)
        assert [policy.delay(n) for n in range(4)] == [2.0, 4.0, 8.0, 10.0]

    def test_jitter_stays_within_ten_percent(self):
        policy = RetryPolicy(base_delay=10.0, jitter=True)
        for _ in range(20):
            assert 10.0 <= policy.delay(0) <= 11.0

    def test_should_retry(self):
        policy = RetryPolicy(max_attempts=3, retry_on=transient)
        assert policy.should_retry(ProviderUnavailable("503"), 1)
        assert not policy.should_retry(ProviderUnavailable("503"), 3)
        assert not policy.should_retry(ProviderError("400", 400), 1)

    @pytest.mark.asyncio
    async def test_call_retries_then_succeeds(self):
        sleeps: list[float] = []

        async def sleep(seconds: float) -> None:
            sleeps.append(seconds)

        fn = Flaky([ProviderUnavailable("a"), ProviderUnavailable("b")])
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, retry_on=transient)

        assert await policy.call(fn, "x", sleep=sleep) == "ok"
        assert fn.calls == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_call_gives_up(self):
        fn = Flaky([ProviderUnavailable("down")] * 5)
        policy = RetryPolicy(max_attempts=2, base_delay=0.0)

        with pytest.raises(ProviderUnavailable):
            await policy.call(fn)
        assert fn.calls == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raises_at_once(self):
        fn = Flaky([ProviderError("bad", 400)])
        with pytest.raises(ProviderError):
            await RetryPolicy(max_attempts=5, retry_on=transient).call(fn)
        assert fn.calls == 1


class TestPredicates:
    def test_transient(self):
        assert transient(ProviderUnavailable("503"))
        assert not transient(ProviderError("bad", 400))
        assert not transient(RuntimeError())

    def test_always(self):
        assert always(RuntimeError())
