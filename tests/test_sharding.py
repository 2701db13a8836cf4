import asyncio
import sqlite3
from decimal import Decimal

import pytest

from economics_dashboard.ingest.parser import parse_economics_batch
from economics_dashboard.metrics.grouping import paginate_parent_groups
from economics_dashboard.metrics.rollups import aggregate_records
from economics_dashboard.reporting.formatter import row_to_dict
from economics_dashboard.storage.repository import SQLiteMetricsStore
from economics_dashboard.storage.sharding import (
    EmbeddedAsinStorage,
    ShardedAsinStorage,
    asin_storage_for,
    migrate_to_shards,
    persist_metrics,
    should_shard,
)

from conftest import economics_record, to_jsonl


def _sample_records():
    items = []
    for day in ("2025-01-01", "2025-01-02", "2025-01-03"):
        items.extend(
            [
                economics_record(day=day, parent="P1", child="P1-A", sales=100.10, fees=[("ReferralFee", 15)], ads=[5]),
                economics_record(day=day, parent="P1", child="P1-B", sales=20.25, fees=[("FBAStorageFee", 1)]),
                economics_record(day=day, parent="P2", child="P2-A", sales=60.00, ads=[50]),
                economics_record(day=day, parent="P3", child="P3-A", sales=30.00),
                economics_record(day=day, parent="P3", child="P3-B", sales=30.00),
                economics_record(day=day, child="SOLO", sales=60.00, fees=[("FBAPerUnitFulfillmentFee", 70)]),
                economics_record(day=day, parent="P4", sales=10.00),
                economics_record(day=day, parent="P4", child="P4-A", sales=5.55),
            ]
        )
    return parse_economics_batch(to_jsonl(items)).records


async def _persist(store, threshold):
    await store.initialize()
    metrics = await aggregate_records(_sample_records(), marketplace="US")
    return await persist_metrics(store, metrics, account_id="acct", region="NA", source="test", threshold=threshold)


async def _all_pages(storage, limit):
    rows = []
    page = 1
    while True:
        table = await paginate_parent_groups(storage, page=page, limit=limit)
        rows.extend(table.rows)
        if not table.pagination.has_more:
            return rows, table
        page += 1


def test_should_shard_boundary():
    assert should_shard(999, 1000) is False
    assert should_shard(1000, 1000) is True
    assert should_shard(1, 1000, pre_flagged=True) is True


def test_threshold_selects_storage(store):
    embedded = asyncio.run(_persist(store, threshold=9))
    sharded = asyncio.run(_persist(store, threshold=8))

    assert embedded.is_large_dataset is False
    assert len(embedded.asin_wise) == 8 * 3
    assert isinstance(asin_storage_for(embedded, store), EmbeddedAsinStorage)

    assert sharded.is_large_dataset is True
    assert sharded.asin_wise == []
    assert isinstance(asin_storage_for(sharded, store), ShardedAsinStorage)


def test_both_paths_report_equal_product_totals(store):
    async def run():
        embedded = await _persist(store, threshold=1000)
        sharded = await _persist(store, threshold=1)
        loaded = await store.fetch_document(embedded.id)
        a = await asin_storage_for(loaded, store).product_totals()
        b = await asin_storage_for(sharded, store, batch_size=2).product_totals()
        return a, b

    embedded_totals, sharded_totals = asyncio.run(run())

    assert sorted(embedded_totals) == sorted(sharded_totals)
    for asin, product in embedded_totals.items():
        assert sharded_totals[asin].sales == product.sales
        assert sharded_totals[asin].platform_fees == product.platform_fees
        assert sharded_totals[asin].parent_asin == product.parent_asin
    assert embedded_totals["P1-A"].sales == Decimal("300.30")


@pytest.mark.parametrize("limit", [1, 2, 3, 10])
def test_concatenated_pages_match_on_both_paths(store, limit):
    async def run():
        embedded = await _persist(store, threshold=1000)
        sharded = await _persist(store, threshold=1)
        full_embedded, last_embedded = await _all_pages(asin_storage_for(embedded, store), 100)
        paged_embedded, _ = await _all_pages(asin_storage_for(embedded, store), limit)
        paged_sharded, last_sharded = await _all_pages(asin_storage_for(sharded, store), limit)
        return full_embedded, last_embedded, paged_embedded, paged_sharded, last_sharded

    full, last_embedded, paged_embedded, paged_sharded, last_sharded = asyncio.run(run())

    expected = [row_to_dict(row) for row in full]
    assert [row_to_dict(row) for row in paged_embedded] == expected
    assert [row_to_dict(row) for row in paged_sharded] == expected
    assert [row["asin"] for row in expected] == ["P1", "P2", "P3", "SOLO", "P4"]
    assert last_embedded.total_parents == last_sharded.total_parents == 5
    assert last_embedded.total_children == last_sharded.total_children == 6


def test_parent_row_sums_members(store):
    async def run():
        document = await _persist(store, threshold=1)
        return await paginate_parent_groups(asin_storage_for(document, store), page=1, limit=10)

    table = asyncio.run(run())
    by_asin = {row.asin: row for row in table.rows}

    p1 = by_asin["P1"]
    assert p1.is_expandable
    assert [child.asin for child in p1.children] == ["P1-A", "P1-B"]
    assert p1.sales == sum(child.sales for child in p1.children) == Decimal("361.05")
    assert p1.advertising_spend == Decimal("15.00")
    assert p1.fees == Decimal("48.00")

    p4 = by_asin["P4"]
    assert [child.asin for child in p4.children] == ["P4-A"]
    assert p4.sales == Decimal("46.65")

    solo = by_asin["SOLO"]
    assert not solo.is_expandable
    assert solo.children == []
    assert solo.gross_profit == Decimal("-30.00")


def test_pagination_metadata_and_validation(store):
    async def run():
        document = await _persist(store, threshold=1000)
        storage = asin_storage_for(document, store)
        last = await paginate_parent_groups(storage, page=3, limit=2)
        beyond = await paginate_parent_groups(storage, page=4, limit=2)
        return last, beyond, storage

    last, beyond, storage = asyncio.run(run())

    assert [row.asin for row in last.rows] == ["P4"]
    assert last.pagination.total_pages == 3
    assert last.pagination.has_more is False
    assert beyond.rows == []

    with pytest.raises(ValueError):
        asyncio.run(paginate_parent_groups(storage, page=0, limit=2))
    with pytest.raises(ValueError):
        asyncio.run(paginate_parent_groups(storage, page=1, limit=0))


def test_migrate_to_shards_keeps_results(store):
    async def run():
        document = await _persist(store, threshold=1000)
        before = await _all_pages(asin_storage_for(document, store), 2)
        migrated = await migrate_to_shards(store, document, batch_size=1)
        reloaded = await store.fetch_document(document.id)
        after = await _all_pages(asin_storage_for(reloaded, store), 2)
        return before[0], migrated, reloaded, after[0]

    before, migrated, reloaded, after = asyncio.run(run())

    assert migrated.is_large_dataset and reloaded.is_large_dataset
    assert reloaded.asin_wise == []
    assert [row_to_dict(row) for row in after] == [row_to_dict(row) for row in before]


def test_delete_removes_document_and_shards(store):
    async def run():
        document = await _persist(store, threshold=1)
        deleted = await store.delete_document(document.id)
        shards = [shard async for shard in store.iter_shards(document.id)]
        return deleted, await store.fetch_document(document.id), shards, await store.delete_document(document.id)

    deleted, fetched, shards, deleted_again = asyncio.run(run())

    assert deleted is True
    assert fetched is None
    assert shards == []
    assert deleted_again is False


def test_parent_drift_resolves_identically_on_both_paths(store):
    records = parse_economics_batch(
        to_jsonl(
            [
                economics_record(day="2025-01-01", parent="PA", child="C1", sales=10),
                economics_record(day="2025-01-02", parent="PZ", child="C1", sales=20),
                economics_record(day="2025-01-01", parent="PA", child="C2", sales=5),
            ]
        )
    ).records

    async def run():
        await store.initialize()
        metrics = await aggregate_records(records)
        embedded = await persist_metrics(store, metrics, account_id="acct", region="NA", source="test", threshold=1000)
        sharded = await persist_metrics(store, metrics, account_id="acct", region="NA", source="test", threshold=1)
        pages = []
        for document in (embedded, sharded):
            table = await paginate_parent_groups(asin_storage_for(document, store), page=1, limit=10)
            pages.append([(row.asin, [child.asin for child in row.children]) for row in table.rows])
        return metrics, pages

    metrics, (embedded_page, sharded_page) = asyncio.run(run())

    assert {item.asin: item.parent_asin for item in metrics.asin_rollups} == {"C1": "PZ", "C2": "PA"}
    assert embedded_page == sharded_page == [("PZ", ["C1"]), ("PA", ["C2"])]


class FlakyShardStore(SQLiteMetricsStore):
    def __init__(self, db_path):
        super().__init__(db_path)
        self.inserts = 0

    async def insert_shards(self, shards):
        self.inserts += 1
        if self.inserts > 1:
            raise sqlite3.OperationalError("disk I/O error")
        return await super().insert_shards(shards)


def test_failed_shard_write_leaves_no_document(tmp_path):
    store = FlakyShardStore(tmp_path / "flaky.sqlite3")

    async def run():
        await store.initialize()
        metrics = await aggregate_records(_sample_records(), marketplace="US")
        with pytest.raises(sqlite3.OperationalError):
            await persist_metrics(
                store, metrics, account_id="acct", region="NA", source="test", threshold=1, batch_size=1
            )
        latest = await store.fetch_latest("acct", "US")
        shards = [shard async for shard in store.iter_shards(1)]
        return latest, shards

    latest, shards = asyncio.run(run())

    assert store.inserts == 2
    assert latest is None
    assert shards == []
