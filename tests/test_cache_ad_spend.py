import asyncio
from decimal import Decimal

from economics_dashboard.config import AmazonCredentialConfig, AppConfig, StorageConfig
from economics_dashboard.data_sources.ad_spend import CachedAdSpendProvider, StoredAdSpendProvider
from economics_dashboard.services import (
    create_service_context,
    get_profitability_table,
    ingest_economics,
    record_advertising_spend,
)
from economics_dashboard.storage.cache import Cache, InMemoryCache


class BrokenCache(Cache):
    async def get(self, key):
        raise ConnectionError("cache down")

    async def set(self, key, value, ttl=None):
        raise ConnectionError("cache down")

    async def delete(self, key):
        raise ConnectionError("cache down")


def test_in_memory_cache_expires(monkeypatch):
    clock = {"now": 100.0}
    monkeypatch.setattr("economics_dashboard.storage.cache.time.monotonic", lambda: clock["now"])
    cache = InMemoryCache(default_ttl=10)

    async def run():
        await cache.set("a", 1)
        await cache.set("b", 2, ttl=0)
        first = await cache.get("a")
        clock["now"] += 11
        return first, await cache.get("a"), await cache.get("b")

    assert asyncio.run(run()) == (1, None, 2)


def test_cached_provider_hits_cache(store):
    cache = InMemoryCache()
    provider = CachedAdSpendProvider(StoredAdSpendProvider(store), cache)

    async def run():
        await store.initialize()
        await store.record_ad_spend("acct", "US", [("A", "2025-01-01", Decimal("3.5")), ("A", "2025-01-02", Decimal("1.5"))])
        first = await provider.fetch_spend_by_asin("acct", "us")
        await store.record_ad_spend("acct", "US", [("A", "2025-01-03", Decimal("10"))])
        second = await provider.fetch_spend_by_asin("acct", "US")
        await provider.invalidate("acct", "US")
        third = await provider.fetch_spend_by_asin("acct", "US")
        return first, second, third

    first, second, third = asyncio.run(run())

    assert first == {"A": Decimal("5.00")}
    assert second == first
    assert third == {"A": Decimal("15.00")}


def test_failing_cache_falls_back_to_store(store, caplog):
    provider = CachedAdSpendProvider(StoredAdSpendProvider(store), BrokenCache())

    async def run():
        await store.initialize()
        await store.record_ad_spend("acct", "US", [("A", "2025-01-01", Decimal("2"))])
        return await provider.fetch_spend_by_asin("acct", "US")

    with caplog.at_level("WARNING"):
        spend = asyncio.run(run())

    assert spend == {"A": Decimal("2.00")}
    assert "cache read failed" in caplog.text


def test_recording_spend_refreshes_table(tmp_path):
    config = AppConfig(
        amazon=AmazonCredentialConfig("mock", "mock"),
        storage=StorageConfig(db_path=str(tmp_path / "metrics.sqlite3")),
    )
    context = create_service_context(config)

    async def run():
        await ingest_economics(context, account_id="acct", region="NA", marketplace="US",
                               start="2025-01-01", end="2025-01-03")
        before = await get_profitability_table(context, account_id="acct", marketplace="US", limit=10)
        child = before["rows"][0]["children"][0]["asin"]
        await record_advertising_spend(
            context, account_id="acct", marketplace="US", entries=[{"asin": child, "date": "2025-01-02", "spend": 999}]
        )
        after = await get_profitability_table(context, account_id="acct", marketplace="US", limit=10)
        return child, before, after

    child, before, after = asyncio.run(run())

    assert isinstance(context.ad_spend, CachedAdSpendProvider)
    before_child = next(c for row in before["rows"] for c in row["children"] if c["asin"] == child)
    after_child = next(c for row in after["rows"] for c in row["children"] if c["asin"] == child)
    assert before_child["advertisingSpend"] != 999.0
    assert after_child["advertisingSpend"] == 999.0
