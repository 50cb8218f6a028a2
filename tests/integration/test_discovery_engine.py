"""
test_discovery_engine.py - Discovery over stored capabilities

Tests search and ranking with real listings and provider reputation:
 - The H100 scenario ranks A above B
 - Filtered listings never appear
 - Pool order breaks score ties
"""

from decimal import Decimal

import pytest

from marketplace.discovery import DiscoveryQuery

pytestmark = pytest.mark.asyncio

H100_QUERY = DiscoveryQuery(gpu_count=8, gpu_type="H100", max_price_per_hour=Decimal("50"), duration_hours=2)


class TestFindMatches:

    async def test_h100_scenario(self, market):
        pa = await market.agent("provider-a", "provider", reputation=4.8)
        pb = await market.agent("provider-b", "provider", reputation=5.0)
        a = await market.capability(pa, price="45.50", available_hours=100)
        b = await market.capability(pb, price="49.00", available_hours=1)

        ranked = await market.discovery.find_matches(H100_QUERY)
        assert [c["id"] for c in ranked] == [a["id"], b["id"]]
        assert ranked[0]["match_score"] == pytest.approx(146.4)
        assert ranked[1]["match_score"] == pytest.approx(110.4)
        assert ranked[0]["reputation_score"] == 4.8

    async def test_filtered_listings_excluded(self, market):
        provider = await market.agent("p", "provider")
        good = await market.capability(provider)
        await market.capability(provider, gpu_type="A100")
        await market.capability(provider, gpu_count=4)
        await market.capability(provider, price="50.01")
        busy = await market.capability(provider)
        await market.storage.capabilities.update(busy["id"], availability_status="busy")

        ranked = await market.discovery.find_matches(H100_QUERY)
        assert [c["id"] for c in ranked] == [good["id"]]

    async def test_region_filter(self, market):
        provider = await market.agent("p", "provider")
        await market.capability(provider, region="us-east-1")
        eu = await market.capability(provider, region="eu-west-1")
        query = DiscoveryQuery(8, "H100", Decimal("50"), duration_hours=2, region="eu-west-1")
        assert [c["id"] for c in await market.discovery.find_matches(query)] == [eu["id"]]

    async def test_equal_scores_keep_pool_order(self, market):
        provider = await market.agent("p", "provider")
        second = await market.capability(provider)
        first = await market.capability(provider)
        db = market.storage._db
        for created_at, cap in ((1.0, first), (2.0, second)):
            await db.execute("UPDATE provider_capabilities SET created_at = ? WHERE id = ?",
                             (created_at, cap["id"]))
        await db.commit()
        ranked = await market.discovery.find_matches(H100_QUERY)
        assert ranked[0]["match_score"] == ranked[1]["match_score"]
        assert [c["id"] for c in ranked] == [first["id"], second["id"]]

    async def test_limit(self, market):
        provider = await market.agent("p", "provider")
        for _ in range(3):
            await market.capability(provider)
        assert len(await market.discovery.find_matches(H100_QUERY, limit=2)) == 2

    async def test_no_candidates(self, market):
        assert await market.discovery.find_matches(H100_QUERY) == []


class TestSearch:

    async def test_search_is_cheapest_first(self, market):
        provider = await market.agent("p", "provider")
        pricey = await market.capability(provider, price="40")
        cheap = await market.capability(provider, price="20")
        pool = await market.discovery.search_capabilities(8, "H100", Decimal("50"))
        assert [c["id"] for c in pool] == [cheap["id"], pricey["id"]]
        assert all("match_score" not in c for c in pool)

    async def test_provider_capabilities(self, market):
        provider = await market.agent("p", "provider")
        other = await market.agent("q", "provider")
        mine = await market.capability(provider)
        await market.capability(other)
        listed = await market.discovery.get_provider_capabilities(provider["id"])
        assert [c["id"] for c in listed] == [mine["id"]]
