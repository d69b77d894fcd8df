from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from trainyard.billing import SqliteLedger
from trainyard.config import PolicySettings, VastSettings
from trainyard.context import ContextRegistry
from trainyard.cost_tracker import CostTracker
from trainyard.events import EventBus
from trainyard.machine import JobMachine
from trainyard.monitor import InstanceMonitor
from trainyard.orchestrator import Orchestrator
from trainyard.scheduler import Scheduler
from trainyard.store import Store, new_id
from trainyard.types import (
    ExecResult,
    Instance,
    InstanceStatus,
    JobStatus,
    LiveStatus,
    Offer,
    SearchCriteria,
    TrainingJob,
)

T0 = 1_700_000_000.0
OWNER = "user-1"


class Clock:
    """Controllable wall clock."""

    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_offer(offer_id: str = "1001", price: float = 0.6, **overrides: Any) -> Offer:
    fields: dict[str, Any] = {
        "id": offer_id,
        "machine_id": "m-1",
        "gpu_name": "RTX 3090",
        "num_gpus": 1,
        "dph_total": price,
        "cpu_ram_gb": 32.0,
        "geolocation": "US",
        "verified": True,
    }
    fields.update(overrides)
    return Offer(**fields)


class FakeMarketplace:
    """In-memory ``Marketplace`` that writes instances to the real store."""

    def __init__(self, store: Store, clock: Clock) -> None:
        self.store = store
        self.clock = clock
        self.offers: list[Offer] = [make_offer()]
        self.live: dict[str, LiveStatus | None] = {}
        self.reachable = True
        self.ready_on_create = True
        self.exec_result = ExecResult(stdout="", stderr="", exit_code=0)
        self.search_errors: list[Exception] = []
        self.create_errors: list[Exception] = []
        self.terminate_error: Exception | None = None
        self.status_error: Exception | None = None
        self.searches: list[SearchCriteria] = []
        self.created: list[Instance] = []
        self.terminated: list[str] = []
        self.commands: list[tuple[str, str]] = []
        self.health_checks: list[tuple[str, int, float]] = []

    async def search_offers(self, criteria: SearchCriteria) -> list[Offer]:
        self.searches.append(criteria)
        if self.search_errors:
            raise self.search_errors.pop(0)
        return list(self.offers)

    async def create_instance(
        self,
        offer_id: str,
        image: str,
        owner_id: str,
        job_id: str | None,
        env: Mapping[str, str],
    ) -> Instance:
        if self.create_errors:
            raise self.create_errors.pop(0)
        offer = next(o for o in self.offers if o.id == offer_id)
        contract_id = str(50_000 + len(self.created))
        now = self.clock()
        ready = self.ready_on_create
        instance = self.store.insert_instance(Instance(
            id=new_id("inst"),
            contract_id=contract_id,
            owner_id=owner_id,
            job_id=job_id,
            offer_id=offer.id,
            gpu_name=offer.gpu_name,
            status=InstanceStatus.RUNNING if ready else InstanceStatus.STARTING,
            hourly_cost=offer.dph_total,
            ssh_host="10.0.0.1" if ready else None,
            ssh_port=22 if ready else None,
            created_at=now,
            updated_at=now,
        ))
        self.live[contract_id] = LiveStatus(
            status="running" if ready else "loading",
            ssh_host=instance.ssh_host,
            ssh_port=instance.ssh_port,
        )
        self.created.append(instance)
        return instance

    async def get_status(self, contract_id: str) -> LiveStatus | None:
        if self.status_error is not None:
            raise self.status_error
        return self.live.get(contract_id)

    async def terminate(self, contract_id: str) -> None:
        self.terminated.append(contract_id)
        if self.terminate_error is not None:
            raise self.terminate_error
        self.store.mark_terminated(contract_id, now=self.clock())

    async def exec(self, instance_id: str, command: str) -> ExecResult:
        self.commands.append((instance_id, command))
        return self.exec_result

    async def test_reachability(self, host: str, port: int, timeout: float = 5.0) -> bool:
        self.health_checks.append((host, port, timeout))
        return self.reachable


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store(tmp_path: Path) -> Store:
    return Store(tmp_path / "trainyard.db")


@pytest.fixture
def ledger(store: Store, clock: Clock) -> SqliteLedger:
    ledger = SqliteLedger(store, now=clock)
    ledger.open_account(OWNER, 1_000)
    return ledger


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def policy() -> PolicySettings:
    return PolicySettings(
        startup_poll_interval=0.01,
        startup_timeout=2.0,
        startup_monitor_attempts=3,
        startup_monitor_delay=0.0,
        provider_backoff=0.0,
    )


@pytest.fixture
def machine(store: Store, ledger: SqliteLedger, events: EventBus, clock: Clock) -> JobMachine:
    return JobMachine(store, ledger, events, now=clock)


@pytest.fixture
def scheduler(store: Store, clock: Clock) -> Scheduler:
    return Scheduler(store, now=clock)


@pytest.fixture
def contexts() -> ContextRegistry:
    return ContextRegistry()


@pytest.fixture
def marketplace(store: Store, clock: Clock) -> FakeMarketplace:
    return FakeMarketplace(store, clock)


@pytest.fixture
def orchestrator(
    store: Store,
    machine: JobMachine,
    ledger: SqliteLedger,
    marketplace: FakeMarketplace,
    scheduler: Scheduler,
    contexts: ContextRegistry,
    policy: PolicySettings,
    events: EventBus,
    clock: Clock,
) -> Orchestrator:
    return Orchestrator(
        store, machine, ledger, marketplace, scheduler, contexts,
        policy=policy,
        vast=VastSettings(api_key="test-key"),
        api_base_url="http://api.test",
        events=events,
        now=clock,
    )


@pytest.fixture
def monitor(
    store: Store,
    machine: JobMachine,
    marketplace: FakeMarketplace,
    scheduler: Scheduler,
    policy: PolicySettings,
    events: EventBus,
    clock: Clock,
) -> InstanceMonitor:
    return InstanceMonitor(
        store, machine, marketplace, scheduler, policy=policy, events=events, now=clock,
    )


@pytest.fixture
def tracker(
    store: Store,
    machine: JobMachine,
    ledger: SqliteLedger,
    policy: PolicySettings,
    clock: Clock,
) -> CostTracker:
    return CostTracker(store, machine, ledger, policy=policy, now=clock)


# =============================================================================
# Record builders
# =============================================================================


@pytest.fixture
def make_job(store: Store, clock: Clock) -> Callable[..., TrainingJob]:
    def build(**overrides: Any) -> TrainingJob:
        job = TrainingJob(
            id=new_id("job"),
            owner_id=OWNER,
            project_id="proj-1",
            job_name="sentiment",
            task_type="text_classification",
            base_model="bert-base",
            config={"epochs": 3},
            status=JobStatus.QUEUED,
            created_at=clock(),
        )
        return store.insert_job(replace(job, **overrides))

    return build


@pytest.fixture
def make_instance(store: Store, clock: Clock) -> Callable[..., Instance]:
    def build(**overrides: Any) -> Instance:
        instance = Instance(
            id=new_id("inst"),
            contract_id=str(overrides.pop("contract_id", new_id("c"))),
            owner_id=OWNER,
            status=InstanceStatus.RUNNING,
            hourly_cost=1.2,
            ssh_host="10.0.0.2",
            ssh_port=22,
            created_at=clock(),
            updated_at=clock(),
        )
        return store.insert_instance(replace(instance, **overrides))

    return build


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Spin the event loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
