"""Thin async wrapper over the Vast.ai v0 REST endpoints trainyard uses."""

from __future__ import annotations

from typing import Any

from loguru import logger

from trainyard.config import VastSettings, get_api_key
from trainyard.errors import ProviderError, ProviderUnavailable
from trainyard.infra.http import HttpClient, HttpError
from trainyard.types import SearchCriteria

from .types import (
    BundlesResponse,
    CreateInstanceResponse,
    InstanceGetResponse,
    InstanceResponse,
    OfferResponse,
)

# =============================================================================
# Search query
# =============================================================================


def build_search_query(criteria: SearchCriteria, *, limit: int = 64) -> dict[str, Any]:
    """Server-side filter for ``POST /bundles/``, cheapest first.

    GPU name and region are substring constraints; the API only matches
    exactly, so ``VastClient.search_offers`` applies them locally.
    """
    query: dict[str, Any] = {
        "rentable": {"eq": True},
        "rented": {"eq": False},
        "external": {"eq": False},
        "order": [["dph_total", "asc"]],
        "type": "on-demand",
        "limit": limit,
    }
    if criteria.verified_only:
        query["verified"] = {"eq": True}
    if criteria.gpu_count:
        query["num_gpus"] = {"gte": criteria.gpu_count}
    if criteria.max_price is not None:
        query["dph_total"] = {"lte": criteria.max_price}
    if criteria.min_ram_gb:
        query["cpu_ram"] = {"gte": criteria.min_ram_gb * 1024}
    return query


def matches_criteria(offer: OfferResponse, criteria: SearchCriteria) -> bool:
    if criteria.gpu_name:
        wanted = criteria.gpu_name.replace("_", " ").lower()
        if wanted not in (offer.get("gpu_name") or "").lower():
            return False
    if criteria.region:
        if criteria.region.lower() not in (offer.get("geolocation") or "").lower():
            return False
    return True


# =============================================================================
# Client
# =============================================================================


class VastClient:
    """Offer search and instance lifecycle calls.

    Transport failures, 429 and 5xx surface as ``ProviderUnavailable``;
    any other rejection as ``ProviderError``.
    """

    def __init__(self, settings: VastSettings, *, api_key: str | None = None) -> None:
        self.settings = settings
        self._http = HttpClient(
            settings.base_url,
            api_key or get_api_key(settings),
            timeout=settings.request_timeout,
        )
        self._log = logger.bind(provider="vastai", component="client")

    async def __aenter__(self) -> VastClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            return await self._http.request(method, path, json=json, params=params)
        except HttpError as e:
            self._log.warning(
                "API error {method} {path}: {status}",
                method=method, path=path, status=e.status,
            )
            if e.transient:
                raise ProviderUnavailable(f"Marketplace unavailable ({e.status}): {e.body}") from e
            raise ProviderError(f"API error {e.status}: {e.body}", e.status, e.body) from e

    # =========================================================================
    # Offer Search
    # =========================================================================

    async def search_offers(self, criteria: SearchCriteria, *, limit: int = 64) -> list[OfferResponse]:
        query = build_search_query(criteria, limit=limit)
        self._log.debug("Search query: {query}", query=query)
        result: BundlesResponse | None = await self._request("POST", "/api/v0/bundles/", json=query)
        offers = result.get("offers", []) if result else []
        return [o for o in offers if matches_criteria(o, criteria)]

    async def get_offer(self, offer_id: str) -> OfferResponse | None:
        query = {"id": {"eq": int(offer_id)}, "rentable": {"eq": True}}
        result: BundlesResponse | None = await self._request("POST", "/api/v0/bundles/", json=query)
        offers = result.get("offers", []) if result else []
        return offers[0] if offers else None

    # =========================================================================
    # Contracts
    # =========================================================================

    async def create_instance(
        self,
        offer_id: str,
        image: str,
        *,
        label: str,
        env: dict[str, str],
        disk: float | None = None,
        onstart_cmd: str = "bash /start.sh",
    ) -> str:
        """Rent ``offer_id``. Returns the new contract id."""
        body: dict[str, Any] = {
            "client_id": "me",
            "image": image,
            "disk": disk or self.settings.disk_gb,
            "label": label,
            "onstart": onstart_cmd,
            "runtype": "ssh",
            "env": env,
        }

        self._log.debug("Renting offer {offer} with {image}", offer=offer_id, image=image)
        result: CreateInstanceResponse | None = await self._request(
            "PUT", f"/api/v0/asks/{offer_id}/", json=body,
        )
        result = result or {}

        contract_id = result.get("new_contract") or result.get("id")
        if contract_id:
            self._log.debug("Offer {offer} became contract {cid}", offer=offer_id, cid=contract_id)
            return str(contract_id)

        error = result.get("msg") or result.get("error") or f"no contract id in response: {result}"
        raise ProviderError(f"Instance creation failed: {error}")

    async def get_instance(self, contract_id: str) -> InstanceResponse | None:
        """Current provider view of a contract, or ``None`` when it has none."""
        result: InstanceGetResponse | None = await self._request(
            "GET", f"/api/v0/instances/{contract_id}/", params={"owner": "me"}
        )
        if not result:
            return None
        data = result.get("instances")
        return data if isinstance(data, dict) else None

    async def destroy_instance(self, contract_id: str) -> bool:
        """Release a contract. ``False`` when the provider no longer knows it."""
        self._log.debug("Releasing contract {cid}", cid=contract_id)
        try:
            await self._request("DELETE", f"/api/v0/instances/{contract_id}/", json={})
        except ProviderError as e:
            if e.status == 404:
                return False
            raise
        return True


__all__ = ["VastClient", "build_search_query", "matches_criteria"]
