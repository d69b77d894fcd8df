"""Payload shapes of the Vast.ai REST API.

Responses stay plain dicts inside the client; ``to_offer`` and
``to_live_status`` turn them into trainyard values at the service edge.
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

from trainyard.types import LiveStatus, Offer

MB_PER_GB = 1024


class OfferResponse(TypedDict):
    """One rentable bundle from ``POST /bundles/``. RAM figures are MB."""

    id: int
    machine_id: int
    gpu_name: str
    num_gpus: int
    cpu_cores: int
    cpu_ram: float
    gpu_ram: float
    disk_space: float
    reliability: float
    dph_total: float
    geolocation: str
    verified: bool


class PortBinding(TypedDict):
    HostIp: NotRequired[str]
    HostPort: int


class InstanceResponse(TypedDict):
    id: int
    actual_status: str | None
    ssh_host: str
    ssh_port: int
    public_ipaddr: str
    dph_total: float
    label: str | None
    status_msg: NotRequired[str | None]
    jupyter_url: NotRequired[str | None]
    ports: NotRequired[dict[str, list[PortBinding]]]


class BundlesResponse(TypedDict):
    offers: list[OfferResponse]


class InstanceGetResponse(TypedDict):
    instances: InstanceResponse


class CreateInstanceResponse(TypedDict):
    """``PUT /asks/{id}/``. ``new_contract`` is the instance id on success."""

    new_contract: NotRequired[int]
    id: NotRequired[int]
    success: NotRequired[bool]
    error: NotRequired[str]
    msg: NotRequired[str]


def direct_ssh_port(instance: InstanceResponse) -> int | None:
    """Host port mapped to the container's port 22, when the machine exposes one."""
    bindings = (instance.get("ports") or {}).get("22/tcp") or []
    return bindings[0].get("HostPort") if bindings else None


def to_offer(offer: OfferResponse) -> Offer:
    machine = offer.get("machine_id")
    return Offer(
        id=str(offer["id"]),
        machine_id=str(machine) if machine is not None else None,
        gpu_name=offer.get("gpu_name", ""),
        num_gpus=int(offer.get("num_gpus") or 1),
        dph_total=float(offer.get("dph_total") or 0.0),
        cpu_cores=int(offer.get("cpu_cores") or 0),
        cpu_ram_gb=(offer.get("cpu_ram") or 0) / MB_PER_GB,
        gpu_ram_gb=(offer.get("gpu_ram") or 0) / MB_PER_GB,
        disk_space_gb=float(offer.get("disk_space") or 0.0),
        reliability=float(offer.get("reliability") or 0.0),
        geolocation=offer.get("geolocation"),
        verified=bool(offer.get("verified", False)),
    )


def to_live_status(instance: InstanceResponse) -> LiveStatus:
    """Direct port on the public address when mapped, else the proxy endpoint."""
    if (direct := direct_ssh_port(instance)) and instance.get("public_ipaddr"):
        host, port = instance["public_ipaddr"].strip(), direct
    else:
        host, port = instance.get("ssh_host"), instance.get("ssh_port")

    status = instance.get("actual_status") or "starting"
    return LiveStatus(
        status=status,
        ssh_host=host or None,
        ssh_port=int(port) if port else None,
        console_url=instance.get("jupyter_url"),
        error=instance.get("status_msg") if status in ("error", "failed") else None,
        hourly_cost=instance.get("dph_total"),
    )


__all__ = [
    "BundlesResponse",
    "CreateInstanceResponse",
    "InstanceGetResponse",
    "InstanceResponse",
    "OfferResponse",
    "PortBinding",
    "direct_ssh_port",
    "to_live_status",
    "to_offer",
]
