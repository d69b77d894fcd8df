"""Marketplace client: the only network boundary to the compute provider.

``VastMarketplace`` wraps ``VastClient`` (HTTP) and ``SSHTransport`` (remote
exec) and owns local Instance records from creation until the provider
reports them running. Each created instance gets a background startup
monitor that blocks only its own task and stops when the owning job is
cancelled.
"""

from __future__ import annotations

import asyncio
import statistics
import time
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
from typing import Any, Protocol, TypeAlias, runtime_checkable

from loguru import logger

from trainyard.config import PolicySettings, SSHSettings
from trainyard.context import ContextRegistry, WaitContext
from trainyard.errors import (
    InstanceUnavailable,
    JobCancelled,
    ProviderError,
    ProviderUnavailable,
)
from trainyard.events import EventSink, InstanceStatusChanged, NullSink
from trainyard.infra.ssh import CONNECT_ERRORS, SSHTransport, is_reachable
from trainyard.store import Store, new_id
from trainyard.types import (
    ExecResult,
    HealthStatus,
    Instance,
    InstanceStatus,
    LiveStatus,
    Offer,
    PricingEstimate,
    SearchCriteria,
)

from .client import VastClient
from .types import to_live_status, to_offer

SSHFactory: TypeAlias = Callable[[Instance], SSHTransport]
ReachabilityCheck: TypeAlias = Callable[[str, int, float], Awaitable[bool]]

_STATUS_MAP: dict[str, InstanceStatus] = {
    "created": InstanceStatus.STARTING,
    "scheduling": InstanceStatus.STARTING,
    "loading": InstanceStatus.STARTING,
    "starting": InstanceStatus.STARTING,
    "provisioning": InstanceStatus.PROVISIONING,
    "running": InstanceStatus.RUNNING,
    "stopping": InstanceStatus.STOPPING,
    "stopped": InstanceStatus.STOPPED,
    "exited": InstanceStatus.STOPPED,
    "error": InstanceStatus.FAILED,
    "failed": InstanceStatus.FAILED,
    "terminated": InstanceStatus.TERMINATED,
}


def normalize_status(raw: str | None) -> InstanceStatus | None:
    """Map a provider status string onto ``InstanceStatus``. Unknown strings give None."""
    return _STATUS_MAP.get((raw or "").strip().lower())


@runtime_checkable
class Marketplace(Protocol):
    async def search_offers(self, criteria: SearchCriteria) -> list[Offer]: ...

    async def create_instance(
        self,
        offer_id: str,
        image: str,
        owner_id: str,
        job_id: str | None,
        env: Mapping[str, str],
    ) -> Instance: ...

    async def get_status(self, contract_id: str) -> LiveStatus | None: ...

    async def terminate(self, contract_id: str) -> None: ...

    async def exec(self, instance_id: str, command: str) -> ExecResult: ...

    async def test_reachability(self, host: str, port: int, timeout: float = 5.0) -> bool: ...


class VastMarketplace:
    """``Marketplace`` backed by Vast.ai."""

    def __init__(
        self,
        client: VastClient,
        store: Store,
        *,
        policy: PolicySettings,
        ssh: SSHSettings,
        contexts: ContextRegistry,
        events: EventSink | None = None,
        ssh_factory: SSHFactory | None = None,
        reachable: ReachabilityCheck = is_reachable,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._store = store
        self._policy = policy
        self._ssh = ssh
        self._contexts = contexts
        self._events = events or NullSink()
        self._ssh_factory = ssh_factory or self._default_transport
        self._reachable = reachable
        self._now = now
        self._startup_tasks: dict[str, asyncio.Task[None]] = {}
        self._log = logger.bind(component="marketplace")

    # =========================================================================
    # Offers
    # =========================================================================

    async def search_offers(self, criteria: SearchCriteria) -> list[Offer]:
        """Matching offers, cheapest first. Empty when nothing matches."""
        raw = await self._client.search_offers(criteria)
        offers = [to_offer(o) for o in raw]
        self._log.debug(
            "Found {n} offers for gpu={gpu} count={count} max_price={price}",
            n=len(offers), gpu=criteria.gpu_name, count=criteria.gpu_count,
            price=criteria.max_price,
        )
        return offers

    async def pricing_estimate(
        self,
        gpu_type: str,
        gpu_count: int = 1,
        hours: float = 1.0,
        region: str | None = None,
    ) -> PricingEstimate | None:
        """Hourly price spread over the first 10 matching offers, or None if none match."""
        offers = await self.search_offers(
            SearchCriteria(gpu_name=gpu_type, gpu_count=gpu_count, region=region)
        )
        prices = [o.dph_total for o in offers[:10]]
        if not prices:
            return None
        return PricingEstimate(
            gpu_type=gpu_type,
            gpu_count=gpu_count,
            hours=hours,
            offers_considered=len(prices),
            min_hourly=min(prices),
            max_hourly=max(prices),
            avg_hourly=statistics.fmean(prices),
        )

    # =========================================================================
    # Instances
    # =========================================================================

    async def create_instance(
        self,
        offer_id: str,
        image: str,
        owner_id: str,
        job_id: str | None,
        env: Mapping[str, str],
    ) -> Instance:
        """Rent ``offer_id`` and persist the instance in ``provisioning``.

        Returns immediately; readiness is tracked by a background startup
        monitor that updates the stored record.
        """
        offer = await self._client.get_offer(offer_id)
        if offer is None:
            raise ProviderError(f"Offer {offer_id} is no longer available", 404)
        details = to_offer(offer)

        contract_id = await self._client.create_instance(
            offer_id,
            image,
            label=f"training-{job_id}" if job_id else f"trainyard-{owner_id}",
            env=dict(env),
        )

        now = self._now()
        instance = self._store.insert_instance(Instance(
            id=new_id("inst"),
            contract_id=contract_id,
            owner_id=owner_id,
            job_id=job_id,
            offer_id=details.id,
            machine_id=details.machine_id,
            gpu_name=details.gpu_name,
            gpu_count=details.num_gpus,
            region=details.geolocation,
            status=InstanceStatus.PROVISIONING,
            hourly_cost=details.dph_total,
            max_idle_minutes=self._policy.max_idle_minutes,
            ssh_user=self._ssh.user,
            created_at=now,
            updated_at=now,
        ))
        self._log.info(
            "Created instance {iid} (contract {cid}) from offer {oid} at ${price:.3f}/h",
            iid=instance.id, cid=contract_id, oid=offer_id, price=instance.hourly_cost,
        )
        self._start_monitor(instance)
        return instance

    async def get_status(self, contract_id: str) -> LiveStatus | None:
        """Provider's live view, or None when it cannot be fetched right now."""
        try:
            data = await self._client.get_instance(contract_id)
        except (ProviderUnavailable, ProviderError) as e:
            self._log.warning("Status fetch for {cid} failed: {error}", cid=contract_id, error=e)
            return None
        return to_live_status(data) if data is not None else None

    async def terminate(self, contract_id: str) -> None:
        """Destroy remotely and mark terminated locally. Safe to repeat."""
        known = await self._client.destroy_instance(contract_id)
        if not known:
            self._log.debug("Instance {cid} already gone at provider", cid=contract_id)

        instance = self._store.get_instance_by_contract(contract_id)
        if instance is not None:
            self._stop_monitor(instance.id)

        updated = self._store.mark_terminated(contract_id, now=self._now())
        was_live = instance is not None and instance.status is not InstanceStatus.TERMINATED
        if updated is not None and was_live:
            self._log.info("Terminated instance {iid} (contract {cid})", iid=updated.id, cid=contract_id)
            self._events.publish(InstanceStatusChanged(
                instance_id=updated.id, job_id=updated.job_id, status=InstanceStatus.TERMINATED,
            ))

    async def exec(
        self,
        instance_id: str,
        command: str,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run ``command`` over SSH. Non-zero exit is returned, not raised.

        Raises:
            InstanceUnavailable: The instance is not locally ``running`` with an endpoint.
            ProviderUnavailable: The SSH connection could not be established.
        """
        instance = self._store.require_instance(instance_id)
        if instance.status is not InstanceStatus.RUNNING or not instance.has_endpoint:
            raise InstanceUnavailable(instance_id)

        transport = self._ssh_factory(instance)
        try:
            async with transport:
                return await transport.run(command, timeout=timeout)
        except CONNECT_ERRORS as e:
            raise ProviderUnavailable(
                f"SSH to {instance.ssh_host}:{instance.ssh_port} failed: {e}"
            ) from e

    async def test_reachability(self, host: str, port: int, timeout: float = 5.0) -> bool:
        try:
            return await self._reachable(host, port, timeout)
        except Exception as e:
            self._log.debug("Reachability check raised {error}", error=e)
            return False

    # =========================================================================
    # Startup monitor
    # =========================================================================

    def _default_transport(self, instance: Instance) -> SSHTransport:
        return SSHTransport(
            host=instance.ssh_host or "",
            port=instance.ssh_port or 22,
            user=instance.ssh_user or self._ssh.user,
            key_path=self._ssh.key_path,
            connect_timeout=self._ssh.connect_timeout,
        )

    def _start_monitor(self, instance: Instance) -> None:
        ctx = self._contexts.register(WaitContext(job_id=instance.job_id))
        task = asyncio.create_task(
            self._watch_startup(instance, ctx), name=f"startup-{instance.id}",
        )
        self._startup_tasks[instance.id] = task
        task.add_done_callback(lambda _: self._contexts.discard(ctx))

    def _stop_monitor(self, instance_id: str) -> None:
        task = self._startup_tasks.pop(instance_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _watch_startup(self, instance: Instance, ctx: WaitContext) -> None:
        log = self._log.bind(instance_id=instance.id, contract_id=instance.contract_id)
        attempts = self._policy.startup_monitor_attempts
        try:
            await ctx.sleep(self._policy.startup_monitor_delay)
            for attempt in range(1, attempts + 1):
                if await self._startup_step(instance.id, log):
                    return
                log.debug("Instance not ready ({n}/{total})", n=attempt, total=attempts)
                if attempt < attempts:
                    await ctx.sleep(self._policy.startup_poll_interval)

            failed = self._store.update_instance(
                instance.id,
                when_status=(InstanceStatus.PROVISIONING, InstanceStatus.STARTING),
                status=InstanceStatus.FAILED,
                health_status=HealthStatus.UNHEALTHY,
                last_health_check=self._now(),
            )
            if failed is not None:
                log.warning("Instance did not become ready after {n} checks", n=attempts)
                self._events.publish(InstanceStatusChanged(
                    instance_id=failed.id, job_id=failed.job_id, status=failed.status,
                ))
        except JobCancelled:
            log.debug("Startup monitor cancelled with its job")
        finally:
            if self._startup_tasks.get(instance.id) is asyncio.current_task():
                del self._startup_tasks[instance.id]

    async def _startup_step(self, instance_id: str, log: Any) -> bool:
        """One startup poll. True when the monitor is done with this instance."""
        current = self._store.get_instance(instance_id)
        if current is None or current.status not in (
            InstanceStatus.PROVISIONING, InstanceStatus.STARTING,
        ):
            return True

        live = await self.get_status(current.contract_id)
        if live is None:
            return False

        now = self._now()
        booting = (InstanceStatus.PROVISIONING, InstanceStatus.STARTING)
        match normalize_status(live.status):
            case InstanceStatus.RUNNING if live.ssh_host and live.ssh_port:
                if not await self.test_reachability(
                    live.ssh_host, live.ssh_port, self._policy.health_timeout,
                ):
                    log.debug("Running but {host}:{port} not reachable yet",
                              host=live.ssh_host, port=live.ssh_port)
                    return False
                updated = self._store.update_instance(
                    instance_id,
                    when_status=booting,
                    status=InstanceStatus.RUNNING,
                    health_status=HealthStatus.HEALTHY,
                    ssh_host=live.ssh_host,
                    ssh_port=live.ssh_port,
                    console_url=live.console_url,
                    last_health_check=now,
                    updated_at=now,
                )
                if updated is not None:
                    log.info("Instance running at {host}:{port}", host=live.ssh_host, port=live.ssh_port)
                    self._events.publish(InstanceStatusChanged(
                        instance_id=updated.id, job_id=updated.job_id, status=updated.status,
                    ))
                return True
            case InstanceStatus.FAILED:
                updated = self._store.update_instance(
                    instance_id,
                    when_status=booting,
                    status=InstanceStatus.FAILED,
                    health_status=HealthStatus.UNHEALTHY,
                    last_health_check=now,
                )
                if updated is not None:
                    log.warning("Instance failed while starting: {error}", error=live.error)
                    self._events.publish(InstanceStatusChanged(
                        instance_id=updated.id, job_id=updated.job_id, status=updated.status,
                    ))
                return True
            case InstanceStatus.STARTING if current.status is InstanceStatus.PROVISIONING:
                self._store.update_instance(
                    instance_id,
                    when_status=(InstanceStatus.PROVISIONING,),
                    status=InstanceStatus.STARTING,
                    ssh_host=live.ssh_host,
                    ssh_port=live.ssh_port,
                    console_url=live.console_url,
                )
                return False
            case _:
                return False

    async def wait_startup(self, instance_id: str) -> None:
        """Wait for the instance's startup monitor, if one is active."""
        task = self._startup_tasks.get(instance_id)
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

    async def close(self) -> None:
        tasks = list(self._startup_tasks.values())
        self._startup_tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        await self._client.close()


__all__ = ["Marketplace", "VastMarketplace", "normalize_status"]
