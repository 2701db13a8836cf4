import asyncio
from datetime import date, timedelta

import pytest

from economics_dashboard.config import AmazonCredentialConfig, AppConfig, EngineConfig, InvalidMarketplaceError
from economics_dashboard.data_sources.base import EconomicsFeedSource
from economics_dashboard.data_sources.economics_feed import FileEconomicsFeedSource
from economics_dashboard.pipeline.pipeline import EconomicsFetchError, EconomicsPipeline

from conftest import economics_record, to_jsonl


class StaticFeed(EconomicsFeedSource):
    def __init__(self, batch):
        self.name = "static_feed"
        self.batch = batch
        self.calls = 0

    async def fetch_batch(self, region, marketplace, start, end):
        self.calls += 1
        return self.batch


class FailingFeed(EconomicsFeedSource):
    def __init__(self):
        self.name = "failing_feed"
        self.calls = 0

    async def fetch_batch(self, region, marketplace, start, end):
        self.calls += 1
        raise TimeoutError("upstream timed out")


def _config(**engine):
    return AppConfig(amazon=AmazonCredentialConfig("mock", "mock"), engine=EngineConfig(**engine))


def _run(pipeline, **kwargs):
    params = {
        "account_id": "acct",
        "region": "NA",
        "marketplace": "US",
        "start": date(2025, 1, 1),
        "end": date(2025, 1, 2),
    }
    params.update(kwargs)
    return asyncio.run(pipeline.run(**params))


BATCH = to_jsonl(
    [
        economics_record(day="2025-01-01", parent="P", child="C1", sales=50, fees=[("ReferralFee", 7.5)]),
        economics_record(day="2025-01-02", parent="P", child="C2", sales=25),
        "not a record",
    ]
)


def test_invalid_region_rejected_before_fetch(store):
    feed = StaticFeed(BATCH)
    pipeline = EconomicsPipeline(config=_config(), store=store, feed=feed)

    with pytest.raises(InvalidMarketplaceError):
        _run(pipeline, region="EU", marketplace="US")
    with pytest.raises(InvalidMarketplaceError):
        _run(pipeline, region="XX")
    assert feed.calls == 0


def test_ingest_persists_document(store):
    pipeline = EconomicsPipeline(config=_config(), store=store, feed=StaticFeed(BATCH))

    result = _run(pipeline, marketplace="us")

    assert result.document.id is not None
    assert result.document.marketplace == "US"
    assert result.document.source == "static_feed"
    assert result.document.start == "2025-01-01"
    assert result.parse.skipped_lines == 1
    assert result.metrics.asin_count == 2
    assert str(result.document.totals.sales) == "75.00"
    assert result.using_cached_data is False


def test_fetch_failure_falls_back_to_latest(store):
    _run(EconomicsPipeline(config=_config(), store=store, feed=StaticFeed(BATCH)))

    result = _run(EconomicsPipeline(config=_config(), store=store, feed=FailingFeed()))

    assert result.using_cached_data is True
    assert result.metrics is None
    assert result.document.source == "static_feed"


def test_fetch_failure_without_history_raises(store):
    pipeline = EconomicsPipeline(config=_config(), store=store, feed=FailingFeed())

    with pytest.raises(EconomicsFetchError):
        _run(pipeline)


def test_fresh_document_is_reused(store):
    first = _run(EconomicsPipeline(config=_config(), store=store, feed=StaticFeed(BATCH)))
    feed = StaticFeed(BATCH)

    reused = _run(EconomicsPipeline(config=_config(), store=store, feed=feed), max_age=timedelta(hours=1))
    configured = _run(EconomicsPipeline(config=_config(max_age_hours=1), store=store, feed=feed))

    assert reused.reused is True
    assert reused.document.id == first.document.id
    assert configured.reused is True
    assert feed.calls == 0


def test_large_dataset_flag_forces_shards(store):
    pipeline = EconomicsPipeline(config=_config(), store=store, feed=StaticFeed(BATCH))

    result = _run(pipeline, pre_flagged=True)

    assert result.document.is_large_dataset is True
    assert result.document.asin_wise == []


def test_file_feed_reads_marketplace_file(tmp_path, store):
    (tmp_path / "NA_US.jsonl").write_text(BATCH, encoding="utf-8")
    pipeline = EconomicsPipeline(config=_config(), store=store, feed=FileEconomicsFeedSource(tmp_path))

    result = _run(pipeline)

    assert len(result.parse.records) == 2
    assert result.document.source == "file_economics_feed"


def test_summary_computes_totals_without_saving(store):
    pipeline = EconomicsPipeline(config=_config(), store=store, feed=StaticFeed(BATCH))

    async def run():
        metrics, parsed = await pipeline.summarize(region="NA", marketplace="us", start=date(2025, 1, 1), end=date(2025, 1, 2))
        await store.initialize()
        return metrics, parsed, await store.fetch_latest("acct", "US")

    metrics, parsed, latest = asyncio.run(run())

    assert str(metrics.totals.sales) == "75.00"
    assert [item.day for item in metrics.datewise] == ["2025-01-01", "2025-01-02"]
    assert metrics.asin_rollups == []
    assert parsed.skipped_lines == 1
    assert latest is None


def test_summary_fetch_failure_raises(store):
    pipeline = EconomicsPipeline(config=_config(), store=store, feed=FailingFeed())

    with pytest.raises(EconomicsFetchError):
        asyncio.run(pipeline.summarize(region="NA", marketplace="US"))
