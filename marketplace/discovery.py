"""
discovery.py - Capability discovery and match scoring.

Filters provider capabilities against a compute request and ranks the
survivors with a simple additive score:

 - Baseline          100
 - GPU count         +20 if enough GPUs, else -30
 - Price             +(1 - price/max) * 20 if within budget, else -40
 - Availability      +15 if available_hours covers the duration, else -20
 - Reputation        +reputation_score * 2 (unrated providers count as 5.0)

The score is floored at 0 and has no ceiling. Candidates that fail the
filter are excluded rather than penalized, so the "else" branches only
matter when scoring a capability directly.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional

from marketplace.storage._util import to_money

if TYPE_CHECKING:
    from marketplace.storage import CapabilityRepo

logger = logging.getLogger("discovery")

BASE_SCORE = 100.0
GPU_MATCH_BONUS = 20.0
GPU_SHORTFALL_PENALTY = 30.0
PRICE_WEIGHT = 20.0
OVER_BUDGET_PENALTY = 40.0
AVAILABILITY_BONUS = 15.0
AVAILABILITY_PENALTY = 20.0
REPUTATION_WEIGHT = 2.0
DEFAULT_REPUTATION = 5.0

DEFAULT_LIMIT = 10


@dataclass
class DiscoveryQuery:
    gpu_count: int
    gpu_type: str
    max_price_per_hour: Decimal
    duration_hours: int = 0
    region: Optional[str] = None

    @classmethod
    def from_request(cls, request: dict, region: Optional[str] = None) -> "DiscoveryQuery":
        return cls(
            gpu_count=request["gpu_count"],
            gpu_type=request["gpu_type"],
            max_price_per_hour=to_money(request["max_price_per_hour"]),
            duration_hours=request.get("duration_hours") or 0,
            region=region or request.get("region"),
        )


def passes_filter(query: DiscoveryQuery, capability: dict) -> bool:
    """Hard constraints a capability must meet to be offered at all."""
    if capability.get("availability_status") != "available":
        return False
    if capability["gpu_type"] != query.gpu_type:
        return False
    if capability["gpu_count"] < query.gpu_count:
        return False
    if to_money(capability["price_per_hour"]) > to_money(query.max_price_per_hour):
        return False
    if query.region and capability.get("region") != query.region:
        return False
    return True


def score_capability(query: DiscoveryQuery, capability: dict) -> float:
    score = BASE_SCORE

    if capability["gpu_count"] >= query.gpu_count:
        score += GPU_MATCH_BONUS
    else:
        score -= GPU_SHORTFALL_PENALTY

    price = to_money(capability["price_per_hour"])
    ceiling = to_money(query.max_price_per_hour)
    if price <= ceiling:
        if ceiling > 0:
            score += (1 - float(price) / float(ceiling)) * PRICE_WEIGHT
    else:
        score -= OVER_BUDGET_PENALTY

    if (capability.get("available_hours") or 0) >= query.duration_hours:
        score += AVAILABILITY_BONUS
    else:
        score -= AVAILABILITY_PENALTY

    reputation = capability.get("reputation_score")
    if reputation is None:
        reputation = DEFAULT_REPUTATION
    score += float(reputation) * REPUTATION_WEIGHT

    return round(max(0.0, score), 4)


def _pool_order(capability: dict):
    # cheapest first, then best reputation, then oldest listing
    reputation = capability.get("reputation_score")
    if reputation is None:
        reputation = DEFAULT_REPUTATION
    return (
        to_money(capability["price_per_hour"]),
        -float(reputation),
        capability.get("created_at") or 0.0,
        capability["id"],
    )


class DiscoveryEngine:
    """Finds and ranks provider capabilities for compute requests."""

    def __init__(self, capability_repo: "CapabilityRepo"):
        self._capabilities = capability_repo

    async def search_capabilities(
        self,
        gpu_count: int,
        gpu_type: str,
        max_price: Decimal,
        region: Optional[str] = None,
    ) -> List[dict]:
        """Filtered candidate pool in pool order, unscored."""
        query = DiscoveryQuery(
            gpu_count=gpu_count, gpu_type=gpu_type,
            max_price_per_hour=to_money(max_price), region=region,
        )
        return await self._pool(query)

    async def find_matches(self, query: DiscoveryQuery, limit: int = DEFAULT_LIMIT) -> List[dict]:
        """Ranked candidates, best first, each with a ``match_score``."""
        pool = await self._pool(query)
        if not pool:
            logger.debug(
                "No candidates for %dx %s <= %s", query.gpu_count, query.gpu_type,
                query.max_price_per_hour,
            )
            return []
        scored = [{**cap, "match_score": score_capability(query, cap)} for cap in pool]
        # sort() is stable, so equal scores keep pool order
        scored.sort(key=lambda c: c["match_score"], reverse=True)
        return scored[:limit]

    async def get_provider_capabilities(self, provider_id: str) -> List[dict]:
        return await self._capabilities.list_for_provider(provider_id)

    async def _pool(self, query: DiscoveryQuery) -> List[dict]:
        rows = await self._capabilities.search(query.gpu_type, query.gpu_count, query.region)
        pool = [cap for cap in rows if passes_filter(query, cap)]
        pool.sort(key=_pool_order)
        return pool
