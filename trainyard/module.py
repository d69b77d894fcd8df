"""Dependency-injection wiring.

Every component receives its collaborators through its constructor;
this module is the one place that builds them.

Usage:
    injector = Injector([TrainyardModule(load_settings())])
    orchestrator = injector.get(Orchestrator)
"""

from __future__ import annotations

from injector import Binder, Module, provider, singleton

from trainyard.billing import Billing, SqliteLedger
from trainyard.config import PolicySettings, Settings, VastSettings
from trainyard.context import ContextRegistry
from trainyard.cost_tracker import CostTracker
from trainyard.events import EventBus, EventSink
from trainyard.machine import JobMachine
from trainyard.marketplace import Marketplace, VastClient, VastMarketplace
from trainyard.monitor import InstanceMonitor
from trainyard.orchestrator import Orchestrator
from trainyard.scheduler import Scheduler
from trainyard.store import Store


class TrainyardModule(Module):
    """Core module: store, ledger, events, marketplace and the three workers."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def configure(self, binder: Binder) -> None:
        binder.bind(Settings, to=self._settings)
        binder.bind(PolicySettings, to=self._settings.policy)
        binder.bind(VastSettings, to=self._settings.vast)

    @singleton
    @provider
    def provide_store(self, settings: Settings) -> Store:
        return Store(settings.db_path)

    @singleton
    @provider
    def provide_ledger(self, store: Store, policy: PolicySettings) -> SqliteLedger:
        return SqliteLedger(store, tokens_per_usd=policy.tokens_per_usd)

    @provider
    def provide_billing(self, ledger: SqliteLedger) -> Billing:
        return ledger

    @singleton
    @provider
    def provide_bus(self) -> EventBus:
        return EventBus()

    @provider
    def provide_sink(self, bus: EventBus) -> EventSink:
        return bus

    @singleton
    @provider
    def provide_contexts(self) -> ContextRegistry:
        return ContextRegistry()

    @singleton
    @provider
    def provide_machine(
        self, store: Store, billing: Billing, events: EventSink, policy: PolicySettings,
    ) -> JobMachine:
        return JobMachine(store, billing, events, platform_fee_rate=policy.platform_fee_rate)

    @singleton
    @provider
    def provide_scheduler(self, store: Store) -> Scheduler:
        return Scheduler(store)

    @singleton
    @provider
    def provide_vast_client(self, vast: VastSettings) -> VastClient:
        return VastClient(vast)

    @singleton
    @provider
    def provide_vast_marketplace(
        self,
        client: VastClient,
        store: Store,
        settings: Settings,
        contexts: ContextRegistry,
        events: EventSink,
    ) -> VastMarketplace:
        return VastMarketplace(
            client, store,
            policy=settings.policy, ssh=settings.ssh, contexts=contexts, events=events,
        )

    @provider
    def provide_marketplace(self, marketplace: VastMarketplace) -> Marketplace:
        return marketplace

    @singleton
    @provider
    def provide_orchestrator(
        self,
        store: Store,
        machine: JobMachine,
        billing: Billing,
        marketplace: Marketplace,
        scheduler: Scheduler,
        contexts: ContextRegistry,
        settings: Settings,
        events: EventSink,
    ) -> Orchestrator:
        return Orchestrator(
            store, machine, billing, marketplace, scheduler, contexts,
            policy=settings.policy,
            vast=settings.vast,
            api_base_url=settings.api_base_url,
            events=events,
        )

    @singleton
    @provider
    def provide_monitor(
        self,
        store: Store,
        machine: JobMachine,
        marketplace: Marketplace,
        scheduler: Scheduler,
        policy: PolicySettings,
        events: EventSink,
    ) -> InstanceMonitor:
        return InstanceMonitor(store, machine, marketplace, scheduler, policy=policy, events=events)

    @singleton
    @provider
    def provide_cost_tracker(
        self, store: Store, machine: JobMachine, billing: Billing, policy: PolicySettings,
    ) -> CostTracker:
        return CostTracker(store, machine, billing, policy=policy)


__all__ = ["TrainyardModule"]
