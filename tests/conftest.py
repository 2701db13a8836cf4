import json
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from economics_dashboard.storage.repository import SQLiteMetricsStore


def economics_record(
    *,
    day: Optional[str] = "2025-01-01",
    parent: Optional[str] = None,
    child: Optional[str] = None,
    sales: float = 0,
    net_sales: Optional[float] = None,
    units: int = 0,
    fees: Sequence[Tuple[str, float]] = (),
    ads: Sequence[float] = (),
    net_proceeds: float = 0,
    currency: Optional[str] = "USD",
) -> Dict:
    record: Dict = {
        "sales": {
            "orderedProductSales": {"amount": sales, "currencyCode": currency},
            "netProductSales": {"amount": sales if net_sales is None else net_sales, "currencyCode": currency},
            "unitsOrdered": units,
            "unitsRefunded": 0,
            "netUnitsSold": units,
        },
        "fees": [
            {"feeTypeName": name, "charges": [{"aggregatedDetail": {"totalAmount": {"amount": amount}}}]}
            for name, amount in fees
        ],
        "ads": [{"charge": {"aggregatedDetail": {"totalAmount": {"amount": amount}}}} for amount in ads],
        "netProceeds": {"total": {"amount": net_proceeds, "currencyCode": currency}},
    }
    if day is not None:
        record["startDate"] = day
        record["endDate"] = day
    if parent is not None:
        record["parentAsin"] = parent
    if child is not None:
        record["childAsin"] = child
    return record


def to_jsonl(records: List[Dict]) -> str:
    return "\n".join(json.dumps(record) for record in records)


@pytest.fixture
def store(tmp_path):
    return SQLiteMetricsStore(tmp_path / "metrics.sqlite3")
