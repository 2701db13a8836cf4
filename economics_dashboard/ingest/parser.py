"""将 Data Kiosk 经济数据的 JSONL 批次解码为 EconomicsRecord 列表。"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from ..data_sources.base import EconomicsRecord, FeeEntry, Money
from ..utils.dates import parse_day
from ..utils.money import to_decimal, to_int

logger = logging.getLogger(__name__)

RECORD_KEYS = ("sales", "fees", "ads")


@dataclass
class ParseResult:
    """
    解析结果。

    属性:
        records (List[EconomicsRecord]): 成功解码的记录。
        total_lines (int): 非空行数量。
        skipped_lines (int): 因格式错误被丢弃的行数量。
    """

    records: List[EconomicsRecord] = field(default_factory=list)
    total_lines: int = 0
    skipped_lines: int = 0


def parse_economics_batch(document: str, *, default_marketplace_id: str = "") -> ParseResult:
    """
    功能说明:
        逐行解析 JSONL 批次。单行解析失败只记录日志并跳过，不会中断整批处理；
        空批次返回结构完整的空结果。
    参数:
        document (str): 原始批次文本。
        default_marketplace_id (str): 记录缺失 marketplaceId 时使用的站点 ID。
    返回:
        ParseResult: 记录列表及行数统计。
    """
    result = ParseResult()
    if not document or not document.strip():
        return result

    for line_no, raw_line in enumerate(document.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        result.total_lines += 1
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning("Skipping malformed line %s: %s", line_no, exc)
            result.skipped_lines += 1
            continue

        items = list(_unwrap(payload))
        if not items:
            keys = sorted(payload) if isinstance(payload, dict) else type(payload).__name__
            logger.warning("Skipping line %s with unknown record format (keys=%s)", line_no, keys)
            result.skipped_lines += 1
            continue
        for item in items:
            result.records.append(decode_record(item, default_marketplace_id=default_marketplace_id))

    logger.info(
        "Parsed economics batch: lines=%s records=%s skipped=%s",
        result.total_lines,
        len(result.records),
        result.skipped_lines,
    )
    return result


def _is_record(value: Any) -> bool:
    return isinstance(value, dict) and any(key in value for key in RECORD_KEYS)


def _unwrap(payload: Any) -> Iterable[Dict[str, Any]]:
    """
    功能说明:
        识别三种形态：顶层直接是记录；`data.<schema>.economics[]` 包装；
        记录（或记录数组）包在某个字段下一层。
    """
    if _is_record(payload):
        yield payload
        return
    if not isinstance(payload, dict):
        return

    data = payload.get("data")
    if isinstance(data, dict):
        for schema_payload in data.values():
            economics = schema_payload.get("economics") if isinstance(schema_payload, dict) else None
            if isinstance(economics, list):
                logger.debug("Unwrapping nested economics array (%s items)", len(economics))
                yield from (item for item in economics if _is_record(item))
                return

    for value in payload.values():
        if _is_record(value):
            yield value
            return
        if isinstance(value, list) and value and all(_is_record(item) for item in value):
            yield from value
            return


def _dig(payload: Any, *path: str) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _first_present(payload: Any, *paths: tuple) -> Any:
    for path in paths:
        value = _dig(payload, *path)
        if value is not None:
            return value
    return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _decode_fees(raw_fees: Any) -> List[FeeEntry]:
    if not isinstance(raw_fees, list):
        return []
    entries: List[FeeEntry] = []
    for raw in raw_fees:
        if not isinstance(raw, dict):
            continue
        charges = raw.get("charges")
        # 个别导出把 charges 写成单个对象而不是数组。
        if isinstance(charges, dict):
            charges = [charges]
        amounts: List[Decimal] = []
        for charge in charges if isinstance(charges, list) else []:
            amounts.append(
                to_decimal(
                    _first_present(
                        charge,
                        ("aggregatedDetail", "totalAmount", "amount"),
                        ("aggregatedDetail", "amount", "amount"),
                    )
                )
            )
        entries.append(FeeEntry(fee_type_name=str(raw.get("feeTypeName") or ""), charges=amounts))
    return entries


def _decode_ads(raw_ads: Any) -> List[Decimal]:
    if not isinstance(raw_ads, list):
        return []
    return [
        to_decimal(
            _first_present(
                ad,
                ("charge", "aggregatedDetail", "totalAmount", "amount"),
                ("charge", "aggregatedDetail", "amount", "amount"),
                ("charge", "totalAmount", "amount"),
                ("charge", "amount", "amount"),
            )
        )
        for ad in raw_ads
        if isinstance(ad, dict)
    ]


def decode_record(item: Dict[str, Any], *, default_marketplace_id: str = "") -> EconomicsRecord:
    """
    功能说明:
        将单个记录对象映射为 EconomicsRecord，缺失的数值字段一律按 0 处理。
    参数:
        item (Dict[str, Any]): 记录对象。
        default_marketplace_id (str): 缺失站点 ID 时的默认值。
    返回:
        EconomicsRecord: 解码后的记录。
    """
    sales = item.get("sales") if isinstance(item.get("sales"), dict) else {}
    ordered_currency = _optional_str(_dig(sales, "orderedProductSales", "currencyCode")) or _optional_str(
        _dig(sales, "netProductSales", "currencyCode")
    )
    return EconomicsRecord(
        day=parse_day(item.get("startDate")) or parse_day(item.get("endDate")),
        marketplace_id=_optional_str(item.get("marketplaceId")) or default_marketplace_id,
        parent_asin=_optional_str(item.get("parentAsin")),
        child_asin=_optional_str(item.get("childAsin")),
        ordered_sales=Money(
            amount=to_decimal(_dig(sales, "orderedProductSales", "amount")),
            currency_code=ordered_currency or "",
        ),
        net_sales=to_decimal(_dig(sales, "netProductSales", "amount")),
        units_ordered=to_int(sales.get("unitsOrdered")),
        units_refunded=to_int(sales.get("unitsRefunded")),
        net_units_sold=to_int(sales.get("netUnitsSold")),
        fees=_decode_fees(item.get("fees")),
        ad_charges=_decode_ads(item.get("ads")),
        net_proceeds=to_decimal(_dig(item, "netProceeds", "total", "amount")),
        net_proceeds_currency=_optional_str(_dig(item, "netProceeds", "total", "currencyCode")) or "",
    )
