from __future__ import annotations

import pytest
from conftest import T0, Clock

from trainyard.billing import SqliteLedger
from trainyard.cost_tracker import (
    COST_OVERRUN,
    LOW_BALANCE,
    NO_BALANCE,
    TRACK_COST,
    CostTracker,
    cost_key,
    ensure_cost_tracking,
)
from trainyard.scheduler import Scheduler, TickOutcome
from trainyard.store import Store
from trainyard.types import InstanceStatus, JobStatus, TransactionType

pytestmark = [pytest.mark.unit]


@pytest.fixture
def running_pair(make_job, make_instance):
    def build(*, owner_id: str = "user-1", cost_estimate: float = 10.0, cost_incurred: float = 0.0,
              job_status: JobStatus = JobStatus.RUNNING, hourly_cost: float = 1.2):
        job = make_job(
            owner_id=owner_id, status=job_status, started_at=T0,
            cost_estimate=cost_estimate, cost_incurred=cost_incurred,
        )
        instance = make_instance(
            owner_id=owner_id, job_id=job.id, hourly_cost=hourly_cost, updated_at=T0,
        )
        return job, instance

    return build


class TestAccrual:
    @pytest.mark.asyncio
    async def test_five_minutes_at_1_20(
        self, tracker: CostTracker, running_pair, store: Store, ledger: SqliteLedger, clock: Clock,
    ):
        job, instance = running_pair(hourly_cost=1.2)
        clock.advance(5 * 60)

        assert await tracker.tick(instance.id) is TickOutcome.CONTINUE

        accrued = store.require_instance(instance.id)
        assert accrued.total_cost == pytest.approx(0.1)
        assert accrued.runtime_minutes == 5
        assert accrued.updated_at == clock()
        assert store.require_job(job.id).cost_incurred == pytest.approx(0.15)

        entries = ledger.transactions(job_id=job.id)
        assert len(entries) == 1
        assert entries[0].type is TransactionType.CHARGE
        assert entries[0].amount == pytest.approx(0.15)
        assert entries[0].vast_cost == pytest.approx(0.1)
        assert entries[0].platform_fee == pytest.approx(0.05)
        assert entries[0].description == "Runtime cost for 5 minutes"

    @pytest.mark.asyncio
    async def test_partial_minutes_carry_over(
        self, tracker: CostTracker, running_pair, store: Store, clock: Clock,
    ):
        _, instance = running_pair()
        clock.advance(59)
        await tracker.tick(instance.id)
        assert store.require_instance(instance.id).total_cost == 0.0

        clock.advance(61)
        await tracker.tick(instance.id)
        assert store.require_instance(instance.id).runtime_minutes == 2

    @pytest.mark.asyncio
    async def test_cost_is_monotonic_across_ticks(
        self, tracker: CostTracker, running_pair, store: Store, clock: Clock,
    ):
        _, instance = running_pair()
        seen: list[tuple[float, int]] = []
        for step in (30, 90, 0, 600, 45, 3600):
            clock.advance(step)
            await tracker.tick(instance.id)
            current = store.require_instance(instance.id)
            seen.append((current.total_cost, current.runtime_minutes))

        assert seen == sorted(seen)

    @pytest.mark.asyncio
    async def test_skips_when_not_running(self, tracker: CostTracker, make_instance, store: Store, clock: Clock):
        instance = make_instance(status=InstanceStatus.STARTING, updated_at=T0)
        clock.advance(600)
        assert await tracker.tick(instance.id) is TickOutcome.CONTINUE
        assert store.require_instance(instance.id).total_cost == 0.0

    @pytest.mark.asyncio
    async def test_stops_for_terminated_or_missing(self, tracker: CostTracker, make_instance, store: Store):
        instance = make_instance(contract_id="9")
        store.mark_terminated("9", now=T0)
        assert await tracker.tick(instance.id) is TickOutcome.STOP
        assert await tracker.tick("inst-gone") is TickOutcome.STOP

    @pytest.mark.asyncio
    async def test_instance_without_job(self, tracker: CostTracker, make_instance, store: Store, ledger, clock: Clock):
        instance = make_instance(updated_at=T0, hourly_cost=0.6)
        clock.advance(600)
        await tracker.tick(instance.id)
        assert store.require_instance(instance.id).total_cost == pytest.approx(0.1)
        assert ledger.transactions(owner_id="user-1")[-1].type is TransactionType.CREDIT

    @pytest.mark.asyncio
    async def test_paused_job_keeps_accruing(
        self, tracker: CostTracker, running_pair, store: Store, clock: Clock,
    ):
        job, instance = running_pair(job_status=JobStatus.PAUSED)
        clock.advance(600)
        await tracker.tick(instance.id)
        assert store.require_job(job.id).cost_incurred == pytest.approx(0.3)
        assert store.require_job(job.id).status is JobStatus.PAUSED


class TestBudget:
    @pytest.mark.asyncio
    async def test_overrun_pauses(self, tracker: CostTracker, running_pair, store: Store, clock: Clock):
        job, instance = running_pair(cost_estimate=10.0, cost_incurred=21.0)
        clock.advance(60)

        await tracker.tick(instance.id)

        paused = store.require_job(job.id)
        assert paused.status is JobStatus.PAUSED
        assert paused.pause_reason == COST_OVERRUN
        # pausing leaves the instance alone
        assert store.require_instance(instance.id).status is InstanceStatus.RUNNING

    @pytest.mark.asyncio
    async def test_warning_zone_does_not_pause(self, tracker: CostTracker, running_pair, store: Store, clock: Clock):
        job, instance = running_pair(cost_estimate=10.0, cost_incurred=16.0)
        clock.advance(60)
        await tracker.tick(instance.id)
        assert store.require_job(job.id).status is JobStatus.RUNNING

    @pytest.mark.asyncio
    async def test_low_balance_pauses(
        self, tracker: CostTracker, running_pair, ledger: SqliteLedger, store: Store, clock: Clock,
    ):
        ledger.open_account("poor", 50)
        job, instance = running_pair(owner_id="poor")
        clock.advance(60)

        await tracker.tick(instance.id)

        assert store.require_job(job.id).pause_reason == LOW_BALANCE

    @pytest.mark.asyncio
    async def test_empty_balance_wins_over_overrun(
        self, tracker: CostTracker, running_pair, ledger: SqliteLedger, store: Store, clock: Clock,
    ):
        ledger.open_account("broke")
        job, instance = running_pair(owner_id="broke", cost_estimate=1.0, cost_incurred=5.0)
        clock.advance(60)

        await tracker.tick(instance.id)

        assert store.require_job(job.id).pause_reason == NO_BALANCE

    @pytest.mark.asyncio
    async def test_low_balance_wins_over_overrun(
        self, tracker: CostTracker, running_pair, ledger: SqliteLedger, store: Store, clock: Clock,
    ):
        ledger.open_account("poor", 50)
        job, instance = running_pair(owner_id="poor", cost_estimate=1.0, cost_incurred=5.0)
        clock.advance(60)

        await tracker.tick(instance.id)

        assert store.require_job(job.id).pause_reason == LOW_BALANCE

    def test_enforce_budget_ignores_paused_jobs(self, tracker: CostTracker, make_job):
        job = make_job(status=JobStatus.PAUSED, cost_estimate=1.0, cost_incurred=5.0)
        assert tracker.enforce_budget(job) is None


def test_ensure_cost_tracking_registers_once(scheduler: Scheduler, make_instance):
    instance = make_instance(job_id="job-1")
    assert ensure_cost_tracking(scheduler, instance, period=60)
    assert not ensure_cost_tracking(scheduler, instance, period=60)

    [task] = scheduler.tasks(job_id="job-1")
    assert (task.name, task.dedup_key, task.period) == (TRACK_COST, cost_key(instance.id), 60)
