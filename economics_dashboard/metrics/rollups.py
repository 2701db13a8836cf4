"""经济数据汇总：全局合计、按日汇总与按 ASIN 汇总。"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..data_sources.base import EconomicsRecord
from ..utils.aio import DEFAULT_YIELD_EVERY, checkpoint
from ..utils.dates import day_key
from ..utils.money import ZERO, clamp_non_negative, quantize, to_decimal, to_int
from .fees import classify_fee, is_platform_fee

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"
UNKNOWN_PRODUCT = "UNKNOWN"


class Projection(str, Enum):
    """聚合投影：FULL 生成全部维度，TOTALS 只计算全局与按日合计（快速摘要）。"""

    FULL = "full"
    TOTALS = "totals"


@dataclass
class RecordContribution:
    """单条记录对各类合计的贡献值，只计算一次后分发给各个累加器。"""

    sales: Decimal
    gross_profit: Decimal
    refunds: Decimal
    advertising_spend: Decimal
    platform_fees: Decimal
    units_sold: int
    fee_totals: Dict[str, Decimal]
    fee_breakdown: Dict[str, Decimal]


def record_contribution(record: EconomicsRecord) -> RecordContribution:
    """
    功能说明:
        计算单条记录的派生数值：退款 = max(0, 下单额 - 净销售额)；毛利取上游净收益；
        广告花费为所有广告扣费之和；费用只累计正数扣费，返还不计入平台费用。
        每个金额在这里按分取整一次，各层汇总都是同一组取整值之和。
    参数:
        record (EconomicsRecord): 已解码的记录。
    返回:
        RecordContribution: 贡献值。
    """
    ordered = quantize(record.ordered_sales.amount)
    fee_totals: Dict[str, Decimal] = {}
    fee_breakdown: Dict[str, Decimal] = {}
    platform_fees = ZERO
    for fee in record.fees:
        positive = quantize(sum((charge for charge in fee.charges if charge > ZERO), ZERO))
        if positive == ZERO:
            continue
        category = classify_fee(fee.fee_type_name)
        fee_totals[category.value] = fee_totals.get(category.value, ZERO) + positive
        name = fee.fee_type_name or "Unknown"
        fee_breakdown[name] = fee_breakdown.get(name, ZERO) + positive
        if is_platform_fee(category):
            platform_fees += positive
    return RecordContribution(
        sales=ordered,
        gross_profit=quantize(record.net_proceeds),
        refunds=clamp_non_negative(ordered - quantize(record.net_sales)),
        advertising_spend=quantize(clamp_non_negative(sum(record.ad_charges, ZERO))),
        platform_fees=platform_fees,
        units_sold=record.net_units_sold,
        fee_totals=fee_totals,
        fee_breakdown=fee_breakdown,
    )


def resolve_parent(current: Optional[str], candidate: Optional[str]) -> Optional[str]:
    """同一商品在不同日期挂在不同父体下时取最大的父体 ID，与分片查询的 MAX 规则一致。"""
    if not candidate:
        return current or None
    if not current:
        return candidate
    return max(current, candidate)


def _add_amounts(target: Dict[str, Decimal], source: Dict[str, Decimal]) -> None:
    for key, amount in source.items():
        target[key] = target.get(key, ZERO) + amount


@dataclass
class DateRollup:
    """某一天的销售额与毛利。"""

    day: str
    sales: Decimal = ZERO
    gross_profit: Decimal = ZERO


@dataclass
class EconomicsTotals:
    """全局合计。"""

    sales: Decimal = ZERO
    gross_profit: Decimal = ZERO
    refunds: Decimal = ZERO
    advertising_spend: Decimal = ZERO
    platform_fees: Decimal = ZERO
    units_sold: int = 0
    fee_totals: Dict[str, Decimal] = field(default_factory=dict)
    fee_breakdown: Dict[str, Decimal] = field(default_factory=dict)

    def add(self, contribution: RecordContribution) -> None:
        self.sales += contribution.sales
        self.gross_profit += contribution.gross_profit
        self.refunds += contribution.refunds
        self.advertising_spend += contribution.advertising_spend
        self.platform_fees += contribution.platform_fees
        self.units_sold += contribution.units_sold
        _add_amounts(self.fee_totals, contribution.fee_totals)
        _add_amounts(self.fee_breakdown, contribution.fee_breakdown)

    def quantized(self) -> "EconomicsTotals":
        return EconomicsTotals(
            sales=quantize(self.sales),
            gross_profit=quantize(self.gross_profit),
            refunds=quantize(self.refunds),
            advertising_spend=quantize(self.advertising_spend),
            platform_fees=quantize(self.platform_fees),
            units_sold=self.units_sold,
            fee_totals={key: quantize(value) for key, value in sorted(self.fee_totals.items())},
            fee_breakdown={key: quantize(value) for key, value in sorted(self.fee_breakdown.items())},
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sales": str(self.sales),
            "gross_profit": str(self.gross_profit),
            "refunds": str(self.refunds),
            "advertising_spend": str(self.advertising_spend),
            "platform_fees": str(self.platform_fees),
            "units_sold": self.units_sold,
            "fee_totals": {key: str(value) for key, value in self.fee_totals.items()},
            "fee_breakdown": {key: str(value) for key, value in self.fee_breakdown.items()},
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "EconomicsTotals":
        return cls(
            sales=to_decimal(payload.get("sales")),
            gross_profit=to_decimal(payload.get("gross_profit")),
            refunds=to_decimal(payload.get("refunds")),
            advertising_spend=to_decimal(payload.get("advertising_spend")),
            platform_fees=to_decimal(payload.get("platform_fees")),
            units_sold=to_int(payload.get("units_sold")),
            fee_totals={key: to_decimal(value) for key, value in (payload.get("fee_totals") or {}).items()},
            fee_breakdown={key: to_decimal(value) for key, value in (payload.get("fee_breakdown") or {}).items()},
        )


@dataclass
class AsinRollup:
    """
    单个商品（可选限定到某一天）的汇总。

    属性:
        asin (str): 商品主键（子体优先，其次父体）。
        parent_asin (Optional[str]): 父体 ASIN，与 asin 相同或为空表示无独立父体。
        day (Optional[str]): 按日分片时的日期键，商品级汇总为 None。
        sales (Decimal): 下单销售额。
        gross_profit (Decimal): 上游净收益之和（报告利润）。
        units_sold (int): 净销量。
        refunds (Decimal): 退款额，恒不小于 0。
        advertising_spend (Decimal): 广告花费。
        platform_fees (Decimal): 平台费用合计（不含返还）。
        fee_totals (Dict[str, Decimal]): 按费用类别的合计。
        fee_breakdown (Dict[str, Decimal]): 按原始费用名称的合计。
    """

    asin: str
    parent_asin: Optional[str] = None
    day: Optional[str] = None
    sales: Decimal = ZERO
    gross_profit: Decimal = ZERO
    units_sold: int = 0
    refunds: Decimal = ZERO
    advertising_spend: Decimal = ZERO
    platform_fees: Decimal = ZERO
    fee_totals: Dict[str, Decimal] = field(default_factory=dict)
    fee_breakdown: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def group_key(self) -> str:
        """父子分组键：没有独立父体的商品自成一组。"""
        return self.parent_asin or self.asin

    def add(self, contribution: RecordContribution) -> None:
        self.sales += contribution.sales
        self.gross_profit += contribution.gross_profit
        self.units_sold += contribution.units_sold
        self.refunds += contribution.refunds
        self.advertising_spend += contribution.advertising_spend
        self.platform_fees += contribution.platform_fees
        _add_amounts(self.fee_totals, contribution.fee_totals)
        _add_amounts(self.fee_breakdown, contribution.fee_breakdown)

    def absorb(self, other: "AsinRollup") -> None:
        """合并同一商品的另一条汇总（例如不同日期的分片）。"""
        self.parent_asin = resolve_parent(self.parent_asin, other.parent_asin)
        self.sales += other.sales
        self.gross_profit += other.gross_profit
        self.units_sold += other.units_sold
        self.refunds += other.refunds
        self.advertising_spend += other.advertising_spend
        self.platform_fees += other.platform_fees
        _add_amounts(self.fee_totals, other.fee_totals)
        _add_amounts(self.fee_breakdown, other.fee_breakdown)

    def quantized(self) -> "AsinRollup":
        return AsinRollup(
            asin=self.asin,
            parent_asin=self.parent_asin,
            day=self.day,
            sales=quantize(self.sales),
            gross_profit=quantize(self.gross_profit),
            units_sold=self.units_sold,
            refunds=quantize(clamp_non_negative(self.refunds)),
            advertising_spend=quantize(self.advertising_spend),
            platform_fees=quantize(self.platform_fees),
            fee_totals={key: quantize(value) for key, value in sorted(self.fee_totals.items())},
            fee_breakdown={key: quantize(value) for key, value in sorted(self.fee_breakdown.items())},
        )

    def to_payload(self) -> Dict[str, Any]:
        """序列化为存储格式；数值存为 JSON 数字以便存储层直接做分组求和。"""
        return {
            "asin": self.asin,
            "parent_asin": self.parent_asin,
            "sales": float(self.sales),
            "gross_profit": float(self.gross_profit),
            "units_sold": self.units_sold,
            "refunds": float(self.refunds),
            "advertising_spend": float(self.advertising_spend),
            "platform_fees": float(self.platform_fees),
            "fee_totals": {key: float(value) for key, value in self.fee_totals.items()},
            "fee_breakdown": {key: float(value) for key, value in self.fee_breakdown.items()},
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], *, day: Optional[str] = None) -> "AsinRollup":
        return cls(
            asin=str(payload.get("asin")),
            parent_asin=payload.get("parent_asin") or None,
            day=day if day is not None else payload.get("day"),
            sales=to_decimal(payload.get("sales")),
            gross_profit=to_decimal(payload.get("gross_profit")),
            units_sold=to_int(payload.get("units_sold")),
            refunds=to_decimal(payload.get("refunds")),
            advertising_spend=to_decimal(payload.get("advertising_spend")),
            platform_fees=to_decimal(payload.get("platform_fees")),
            fee_totals={key: to_decimal(value) for key, value in (payload.get("fee_totals") or {}).items()},
            fee_breakdown={key: to_decimal(value) for key, value in (payload.get("fee_breakdown") or {}).items()},
        )


@dataclass
class EconomicsMetrics:
    """
    一次聚合运行的结果，持久化前的 MetricsDocument 内容。

    属性:
        start (Optional[date]) / end (Optional[date]): 查询日期范围。
        marketplace (str): 站点代码。
        currency (str): 本次运行固定使用的币种。
        totals (EconomicsTotals): 全局合计。
        datewise (List[DateRollup]): 按日期升序的日汇总。
        asin_daily (List[AsinRollup]): 按 (日期, ASIN) 的汇总，是分片存储的单位。
        asin_rollups (List[AsinRollup]): 商品级汇总，按销售额降序。
        record_count (int): 参与聚合的记录数。
        unknown_product_records (int): 无法识别商品的记录数（只计入全局与日汇总）。
    """

    start: Optional[date]
    end: Optional[date]
    marketplace: str
    currency: str = DEFAULT_CURRENCY
    totals: EconomicsTotals = field(default_factory=EconomicsTotals)
    datewise: List[DateRollup] = field(default_factory=list)
    asin_daily: List[AsinRollup] = field(default_factory=list)
    asin_rollups: List[AsinRollup] = field(default_factory=list)
    record_count: int = 0
    unknown_product_records: int = 0

    @property
    def asin_count(self) -> int:
        return len(self.asin_rollups)


async def aggregate_records(
    records: Iterable[EconomicsRecord],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    marketplace: str = "",
    projection: Projection = Projection.FULL,
    yield_every: int = DEFAULT_YIELD_EVERY,
) -> EconomicsMetrics:
    """
    功能说明:
        聚合一批记录。所有中间字典都属于本次调用，调用结束即丢弃。
        币种取第一次出现的非空币种并在整次运行中保持不变，混合币种不做换算。
    参数:
        records (Iterable[EconomicsRecord]): 解析后的记录。
        start (Optional[date]): 查询起始日期。
        end (Optional[date]): 查询结束日期。
        marketplace (str): 站点代码。
        projection (Projection): 需要计算的维度。
        yield_every (int): 每处理多少条记录让出一次事件循环。
    返回:
        EconomicsMetrics: 已按分取整的聚合结果。
    """
    currency = ""
    totals = EconomicsTotals()
    by_date: Dict[str, DateRollup] = {}
    by_asin: Dict[str, AsinRollup] = {}
    by_asin_day: Dict[tuple, AsinRollup] = {}
    record_count = 0
    unknown = 0

    for record in records:
        record_count += 1
        if not currency:
            currency = record.ordered_sales.currency_code or record.net_proceeds_currency

        contribution = record_contribution(record)
        totals.add(contribution)

        key = day_key(record.day)
        date_rollup = by_date.setdefault(key, DateRollup(day=key))
        date_rollup.sales += contribution.sales
        date_rollup.gross_profit += contribution.gross_profit

        asin = record.product_id
        if not asin:
            unknown += 1
        elif projection is Projection.FULL:
            parent = record.parent_asin
            product = by_asin.setdefault(asin, AsinRollup(asin=asin))
            product.parent_asin = resolve_parent(product.parent_asin, parent)
            product.add(contribution)
            daily = by_asin_day.setdefault((key, asin), AsinRollup(asin=asin, day=key))
            daily.parent_asin = resolve_parent(daily.parent_asin, parent)
            daily.add(contribution)

        await checkpoint(record_count, yield_every)

    if unknown:
        logger.warning("%s records had no identifiable product id (%s)", unknown, UNKNOWN_PRODUCT)

    metrics = EconomicsMetrics(
        start=start,
        end=end,
        marketplace=marketplace,
        currency=currency or DEFAULT_CURRENCY,
        totals=totals.quantized(),
        datewise=[
            DateRollup(day=day, sales=quantize(item.sales), gross_profit=quantize(item.gross_profit))
            for day, item in sorted(by_date.items())
        ],
        asin_daily=[by_asin_day[key].quantized() for key in sorted(by_asin_day)],
        asin_rollups=sorted(
            (item.quantized() for item in by_asin.values()),
            key=lambda item: (-item.sales, item.asin),
        ),
        record_count=record_count,
        unknown_product_records=unknown,
    )
    logger.info(
        "Aggregated %s records: dates=%s asins=%s sales=%s currency=%s",
        record_count,
        len(metrics.datewise),
        metrics.asin_count,
        metrics.totals.sales,
        metrics.currency,
    )
    return metrics


async def merge_by_product(
    entries: Iterable[AsinRollup],
    *,
    yield_every: int = DEFAULT_YIELD_EVERY,
) -> Dict[str, AsinRollup]:
    """
    功能说明:
        将按日的 ASIN 汇总合并为商品级汇总，大循环中定期让出事件循环。
    参数:
        entries (Iterable[AsinRollup]): 按日汇总条目。
        yield_every (int): 让出间隔。
    返回:
        Dict[str, AsinRollup]: `{asin: 商品级汇总}`。
    """
    merged: Dict[str, AsinRollup] = {}
    for index, entry in enumerate(entries, start=1):
        product = merged.get(entry.asin)
        if product is None:
            merged[entry.asin] = AsinRollup(asin=entry.asin)
            product = merged[entry.asin]
        product.absorb(entry)
        await checkpoint(index, yield_every)
    return merged

