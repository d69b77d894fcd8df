"""Compute marketplace access (Vast.ai)."""

from trainyard.marketplace.client import VastClient, build_search_query
from trainyard.marketplace.service import Marketplace, VastMarketplace, normalize_status

__all__ = [
    "Marketplace",
    "VastClient",
    "VastMarketplace",
    "build_search_query",
    "normalize_status",
]
