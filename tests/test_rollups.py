import asyncio
from datetime import date
from decimal import Decimal

from economics_dashboard.ingest.parser import parse_economics_batch
from economics_dashboard.metrics.grouping import build_product_row
from economics_dashboard.metrics.issues import detect_issues
from economics_dashboard.metrics.rollups import Projection, aggregate_records, record_contribution
from economics_dashboard.utils.dates import UNDATED_KEY

from conftest import economics_record, to_jsonl


def _records(*items):
    return parse_economics_batch(to_jsonl(list(items))).records


def test_worked_example():
    records = _records(
        economics_record(child="A1", sales=100, net_sales=90, fees=[("FBAPerUnitFulfillmentFee", 10)], net_proceeds=80),
        economics_record(child="A1", sales=50, net_sales=50, fees=[("FBAStorageFee", 5)], net_proceeds=45),
        economics_record(child="A1", sales=0, net_sales=0, ads=[20], net_proceeds=-20),
    )

    metrics = asyncio.run(aggregate_records(records, marketplace="US"))

    product = metrics.asin_rollups[0]
    assert product.sales == Decimal("150.00")
    assert product.refunds == Decimal("10.00")
    assert product.advertising_spend == Decimal("20.00")
    assert product.fee_totals == {"fulfillment": Decimal("10.00"), "storage": Decimal("5.00")}
    assert len(metrics.asin_daily) == 1

    totals = metrics.totals
    assert totals.sales == Decimal("150.00")
    assert totals.refunds == Decimal("10.00")
    assert totals.advertising_spend == Decimal("20.00")
    assert totals.platform_fees == Decimal("15.00")
    assert totals.fee_totals == {"fulfillment": Decimal("10.00"), "storage": Decimal("5.00")}
    assert totals.gross_profit == Decimal("105.00")

    row = build_product_row(metrics.asin_rollups[0])
    assert row.gross_profit == Decimal("115.00")
    assert row.reported_profit == Decimal("105.00")
    assert row.margin == Decimal("76.67")
    assert detect_issues([row]) == []


def test_empty_batch_gives_zero_totals():
    metrics = asyncio.run(aggregate_records([], marketplace="US"))

    assert metrics.totals.sales == Decimal("0.00")
    assert metrics.totals.units_sold == 0
    assert metrics.datewise == []
    assert metrics.asin_daily == []
    assert metrics.asin_rollups == []
    assert metrics.currency == "USD"
    assert metrics.record_count == 0


def test_asin_sales_match_date_sales_for_identified_products():
    records = _records(
        economics_record(day="2025-01-01", parent="P", child="C1", sales=10.10),
        economics_record(day="2025-01-02", parent="P", child="C1", sales=20.20),
        economics_record(day="2025-01-02", child="C2", sales=5.05),
        economics_record(day=None, child="C3", sales=1),
    )

    metrics = asyncio.run(aggregate_records(records, start=date(2025, 1, 1), end=date(2025, 1, 2)))

    asin_total = sum(item.sales for item in metrics.asin_rollups)
    date_total = sum(item.sales for item in metrics.datewise)
    assert asin_total == date_total == Decimal("36.35")
    assert [item.day for item in metrics.datewise] == ["2025-01-01", "2025-01-02", UNDATED_KEY]
    assert [item.asin for item in metrics.asin_rollups] == ["C1", "C2", "C3"]
    assert metrics.asin_rollups[0].parent_asin == "P"
    assert len(metrics.asin_daily) == 4


def test_sub_cent_amounts_sum_the_same_at_every_level():
    records = _records(
        economics_record(day="2025-01-01", child="C1", sales=0.005, fees=[("ReferralFee", 0.004)], ads=[0.005]),
        economics_record(day="2025-01-01", child="C2", sales=0.005, fees=[("ReferralFee", 0.004)], ads=[0.005]),
        economics_record(day="2025-01-02", child="C1", sales=0.335),
    )

    metrics = asyncio.run(aggregate_records(records))

    asin_total = sum(item.sales for item in metrics.asin_rollups)
    date_total = sum(item.sales for item in metrics.datewise)
    daily_total = sum(item.sales for item in metrics.asin_daily)
    assert asin_total == date_total == daily_total == metrics.totals.sales == Decimal("0.36")
    assert metrics.totals.advertising_spend == sum(item.advertising_spend for item in metrics.asin_rollups)
    assert metrics.totals.platform_fees == Decimal("0.00")


def test_unknown_product_counts_only_in_totals():
    records = _records(
        economics_record(child="C1", sales=10),
        economics_record(sales=7),
    )

    metrics = asyncio.run(aggregate_records(records))

    assert metrics.totals.sales == Decimal("17.00")
    assert sum(item.sales for item in metrics.datewise) == Decimal("17.00")
    assert sum(item.sales for item in metrics.asin_rollups) == Decimal("10.00")
    assert metrics.unknown_product_records == 1


def test_refund_never_negative_and_credits_ignored():
    record = _records(
        economics_record(
            child="C1",
            sales=10,
            net_sales=12,
            fees=[("ReferralFee", -3), ("FBAStorageFee", 2)],
            ads=[-5],
        )
    )[0]

    contribution = record_contribution(record)

    assert contribution.refunds == Decimal("0")
    assert contribution.advertising_spend == Decimal("0")
    assert contribution.platform_fees == Decimal("2")
    assert contribution.fee_totals == {"storage": Decimal("2")}


def test_first_currency_wins():
    records = _records(
        economics_record(child="C1", sales=1, currency=None),
        economics_record(child="C2", sales=1, currency="EUR"),
        economics_record(child="C3", sales=1, currency="GBP"),
    )

    metrics = asyncio.run(aggregate_records(records))

    assert metrics.currency == "EUR"


def test_totals_projection_skips_products():
    records = _records(economics_record(child="C1", sales=3), economics_record(child="C2", sales=4))

    metrics = asyncio.run(aggregate_records(records, projection=Projection.TOTALS))

    assert metrics.totals.sales == Decimal("7.00")
    assert metrics.asin_rollups == []
    assert metrics.asin_daily == []


def test_aggregation_yields_to_event_loop():
    records = _records(*(economics_record(child=f"C{i}", sales=1) for i in range(100)))

    async def run():
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0)

        task = asyncio.create_task(ticker())
        await asyncio.sleep(0)
        before = ticks
        await aggregate_records(records, yield_every=10)
        task.cancel()
        return ticks - before

    assert asyncio.run(run()) >= 5
