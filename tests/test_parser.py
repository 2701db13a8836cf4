import json
from datetime import date
from decimal import Decimal

from economics_dashboard.ingest.parser import decode_record, parse_economics_batch

from conftest import economics_record, to_jsonl


def test_direct_records_are_decoded():
    batch = to_jsonl(
        [
            economics_record(
                parent="P1",
                child="C1",
                sales=150,
                net_sales=140,
                units=3,
                fees=[("FBAPerUnitFulfillmentFee", 10)],
                ads=[20],
                net_proceeds=105,
            )
        ]
    )

    result = parse_economics_batch(batch)

    assert result.total_lines == 1
    assert result.skipped_lines == 0
    record = result.records[0]
    assert record.day == date(2025, 1, 1)
    assert record.parent_asin == "P1"
    assert record.child_asin == "C1"
    assert record.ordered_sales.amount == Decimal("150")
    assert record.ordered_sales.currency_code == "USD"
    assert record.net_sales == Decimal("140")
    assert record.net_units_sold == 3
    assert record.fees[0].fee_type_name == "FBAPerUnitFulfillmentFee"
    assert record.fees[0].charges == [Decimal("10")]
    assert record.ad_charges == [Decimal("20")]
    assert record.net_proceeds == Decimal("105")


def test_data_kiosk_wrapper_and_field_wrapper():
    wrapped = {"data": {"analytics_economics_2024_03_15": {"economics": [economics_record(child="A"), economics_record(child="B")]}}}
    nested = {"record": economics_record(child="C")}
    nested_list = {"items": [economics_record(child="D"), economics_record(child="E")]}

    result = parse_economics_batch("\n".join(json.dumps(item) for item in (wrapped, nested, nested_list)))

    assert [record.child_asin for record in result.records] == ["A", "B", "C", "D", "E"]
    assert result.skipped_lines == 0


def test_malformed_and_unknown_lines_are_skipped(caplog):
    batch = "\n".join(
        [
            json.dumps(economics_record(child="A")),
            "{not json",
            "",
            json.dumps({"unrelated": {"value": 1}}),
            json.dumps(economics_record(child="B")),
        ]
    )

    with caplog.at_level("WARNING"):
        result = parse_economics_batch(batch)

    assert [record.child_asin for record in result.records] == ["A", "B"]
    assert result.total_lines == 4
    assert result.skipped_lines == 2
    assert "line 2" in caplog.text


def test_empty_batch_yields_empty_result():
    result = parse_economics_batch("  \n\n")

    assert result.records == []
    assert result.total_lines == 0
    assert result.skipped_lines == 0


def test_amount_fallback_paths():
    item = {
        "sales": {"orderedProductSales": {"amount": "not-a-number"}},
        "fees": [{"feeTypeName": "ReferralFee", "charges": [{"aggregatedDetail": {"amount": {"amount": 7.5}}}]}],
        "ads": [
            {"charge": {"aggregatedDetail": {"amount": {"amount": 1}}}},
            {"charge": {"totalAmount": {"amount": 2}}},
            {"charge": {"amount": {"amount": 3}}},
            {"charge": {}},
        ],
        "endDate": "2025-02-03T00:00:00Z",
    }

    record = decode_record(item, default_marketplace_id="ATVPDKIKX0DER")

    assert record.ordered_sales.amount == Decimal("0")
    assert record.fees[0].charges == [Decimal("7.5")]
    assert record.ad_charges == [Decimal("1"), Decimal("2"), Decimal("3"), Decimal("0")]
    assert record.day == date(2025, 2, 3)
    assert record.marketplace_id == "ATVPDKIKX0DER"
    assert record.product_id is None
