from __future__ import annotations

import asyncio

import pytest
from conftest import Clock

from trainyard.errors import ProviderError, ProviderUnavailable
from trainyard.retry import RetryPolicy, transient
from trainyard.scheduler import Scheduler, TaskStatus, TickOutcome
from trainyard.store import Store

pytestmark = [pytest.mark.unit]


class Recorder:
    def __init__(self, outcomes: list[object] | None = None) -> None:
        self.calls: list[dict] = []
        self._outcomes = list(outcomes or [])

    async def __call__(self, payload: dict) -> TickOutcome | None:
        self.calls.append(payload)
        outcome = self._outcomes.pop(0) if self._outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestOneShot:
    @pytest.mark.asyncio
    async def test_runs_when_due(self, scheduler: Scheduler, clock: Clock):
        handler = Recorder()
        scheduler.register("process_job", handler)
        task_id = scheduler.enqueue("process_job", {"job_id": "job-1"}, job_id="job-1", delay=10)

        assert await scheduler.run_due() == 0
        clock.advance(10)
        assert await scheduler.run_due() == 1

        assert handler.calls == [{"job_id": "job-1"}]
        assert scheduler.get(task_id).status is TaskStatus.DONE

    @pytest.mark.asyncio
    async def test_retries_with_exponential_backoff(self, scheduler: Scheduler, clock: Clock):
        handler = Recorder([ProviderUnavailable("503"), ProviderUnavailable("503")])
        scheduler.register("process_job", handler, retry=RetryPolicy(max_attempts=3, base_delay=2.0))
        task_id = scheduler.enqueue("process_job", {"job_id": "job-1"})

        await scheduler.run_due()
        task = scheduler.get(task_id)
        assert (task.status, task.attempts, task.next_run_at) == (TaskStatus.PENDING, 1, clock() + 2.0)

        clock.advance(2.0)
        await scheduler.run_due()
        assert scheduler.get(task_id).next_run_at == clock() + 4.0

        clock.advance(4.0)
        await scheduler.run_due()
        assert scheduler.get(task_id).status is TaskStatus.DONE
        assert len(handler.calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, scheduler: Scheduler, clock: Clock):
        handler = Recorder([ProviderUnavailable("down")] * 5)
        scheduler.register("process_job", handler, retry=RetryPolicy(max_attempts=2, base_delay=1.0))
        task_id = scheduler.enqueue("process_job", {})

        await scheduler.run_due()
        clock.advance(1.0)
        await scheduler.run_due()

        task = scheduler.get(task_id)
        assert task.status is TaskStatus.FAILED
        assert task.attempts == 2
        assert "down" in task.last_error

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self, scheduler: Scheduler):
        handler = Recorder([ProviderError("bad request", 400)])
        scheduler.register("process_job", handler, retry=RetryPolicy(max_attempts=5, retry_on=transient))
        task_id = scheduler.enqueue("process_job", {})

        await scheduler.run_due()

        assert scheduler.get(task_id).status is TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_handler_fails(self, scheduler: Scheduler):
        task_id = scheduler.enqueue("nobody_home", {})
        await scheduler.run_due()
        assert scheduler.get(task_id).status is TaskStatus.FAILED

    def test_remove_pending_only_touches_one_shots(self, scheduler: Scheduler):
        scheduler.enqueue("process_job", {}, job_id="job-1")
        scheduler.enqueue("process_job", {}, job_id="job-2")
        scheduler.schedule_recurring("monitor_instance", {}, period=30, dedup_key="monitor:i", job_id="job-1")

        assert scheduler.remove_pending("job-1") == 1
        assert [t.name for t in scheduler.tasks(job_id="job-1")] == ["monitor_instance"]
        assert len(scheduler.tasks(job_id="job-2")) == 1


class TestRecurring:
    @pytest.mark.asyncio
    async def test_reschedules_every_period(self, scheduler: Scheduler, clock: Clock):
        handler = Recorder()
        scheduler.register("track_cost", handler)
        task_id = scheduler.schedule_recurring("track_cost", {"instance_id": "i"}, period=60, dedup_key="cost:i")

        assert await scheduler.run_due() == 0
        clock.advance(60)
        await scheduler.run_due()
        clock.advance(60)
        await scheduler.run_due()

        task = scheduler.get(task_id)
        assert len(handler.calls) == 2
        assert task.status is TaskStatus.PENDING
        assert task.next_run_at == clock() + 60

    @pytest.mark.asyncio
    async def test_stop_outcome_deregisters(self, scheduler: Scheduler, clock: Clock):
        scheduler.register("monitor_instance", Recorder([TickOutcome.STOP]))
        task_id = scheduler.schedule_recurring(
            "monitor_instance", {}, period=30, dedup_key="monitor:i", delay=0,
        )

        await scheduler.run_due()

        assert scheduler.get(task_id).status is TaskStatus.DONE
        assert not scheduler.is_scheduled("monitor:i")
        # the key is free again once the previous registration is done
        assert scheduler.schedule_recurring("monitor_instance", {}, period=30, dedup_key="monitor:i")

    def test_dedup_key(self, scheduler: Scheduler):
        first = scheduler.schedule_recurring("track_cost", {}, period=60, dedup_key="cost:i")
        second = scheduler.schedule_recurring("track_cost", {}, period=60, dedup_key="cost:i")
        assert first is not None
        assert second is None
        assert scheduler.is_scheduled("cost:i")

    def test_deregister(self, scheduler: Scheduler):
        scheduler.schedule_recurring("track_cost", {}, period=60, dedup_key="cost:i")
        assert scheduler.deregister("cost:i")
        assert not scheduler.is_scheduled("cost:i")
        assert not scheduler.deregister("cost:i")

    @pytest.mark.asyncio
    async def test_failing_tick_backs_off_then_resets(self, scheduler: Scheduler, clock: Clock):
        handler = Recorder([RuntimeError("flaky"), TickOutcome.CONTINUE])
        scheduler.register("monitor_instance", handler, retry=RetryPolicy(max_attempts=10, base_delay=5.0))
        task_id = scheduler.schedule_recurring("monitor_instance", {}, period=30, dedup_key="m", delay=0)

        await scheduler.run_due()
        assert scheduler.get(task_id).attempts == 1
        clock.advance(5.0)
        await scheduler.run_due()

        task = scheduler.get(task_id)
        assert task.attempts == 0
        assert task.next_run_at == clock() + 30

    @pytest.mark.asyncio
    async def test_exhausted_retries_wait_for_next_period(self, scheduler: Scheduler, clock: Clock):
        handler = Recorder([RuntimeError("provider down")] * 10)
        scheduler.register("monitor_instance", handler, retry=RetryPolicy(max_attempts=2, base_delay=1.0))
        task_id = scheduler.schedule_recurring("monitor_instance", {}, period=30, dedup_key="m", delay=0)

        await scheduler.run_due()
        clock.advance(1.0)
        await scheduler.run_due()

        task = scheduler.get(task_id)
        assert task.status is TaskStatus.PENDING
        assert task.attempts == 0
        assert task.next_run_at == clock() + 30
        assert "provider down" in task.last_error
        assert scheduler.is_scheduled("m")

        clock.advance(30)
        await scheduler.run_due()
        assert len(handler.calls) == 3
        assert scheduler.get(task_id).status is TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_non_retryable_tick_error_keeps_schedule(self, scheduler: Scheduler, clock: Clock):
        handler = Recorder([ProviderError("bad request", 400), TickOutcome.CONTINUE])
        scheduler.register("track_cost", handler, retry=RetryPolicy(max_attempts=5, retry_on=transient))
        task_id = scheduler.schedule_recurring("track_cost", {}, period=60, dedup_key="cost:i", delay=0)

        await scheduler.run_due()

        task = scheduler.get(task_id)
        assert task.status is TaskStatus.PENDING
        assert task.next_run_at == clock() + 60


class TestDurability:
    def test_tasks_survive_a_new_scheduler(self, store: Store, clock: Clock):
        Scheduler(store, now=clock).enqueue("process_job", {"job_id": "job-1"}, job_id="job-1")
        fresh = Scheduler(store, now=clock)
        assert [t.payload for t in fresh.tasks(job_id="job-1")] == [{"job_id": "job-1"}]

    def test_recover_releases_running_rows(self, store: Store, clock: Clock):
        crashed = Scheduler(store, now=clock)
        task_id = crashed.enqueue("process_job", {})
        crashed._claim(10)
        assert crashed.get(task_id).status is TaskStatus.RUNNING

        fresh = Scheduler(store, now=clock)
        assert fresh.recover() == 1
        assert fresh.get(task_id).status is TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_run_forever_stops_on_event(self, store: Store, clock: Clock):
        scheduler = Scheduler(store, now=clock, poll_interval=0.01)
        handler = Recorder()
        scheduler.register("process_job", handler)
        scheduler.enqueue("process_job", {"n": 1})
        stop = asyncio.Event()

        runner = asyncio.create_task(scheduler.run_forever(stop))
        for _ in range(100):
            if handler.calls:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(runner, timeout=2)

        assert handler.calls == [{"n": 1}]
        assert scheduler.stats()["done"] == 1
