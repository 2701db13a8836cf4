"""盈利问题检测：低利润率与亏损商品识别、建议生成与分页。"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Tuple

from ..utils.money import HUNDRED, ZERO, quantize
from .grouping import Pagination, ProductRow, validate_page, make_pagination

LOW_MARGIN_THRESHOLD = Decimal("10")
HIGH_SEVERITY_MARGIN = Decimal("5")
ADS_RATIO_THRESHOLD = Decimal("50")
FEES_RATIO_THRESHOLD = Decimal("40")


class IssueType(str, Enum):
    NEGATIVE_PROFIT = "negative_profit"
    LOW_MARGIN = "low_margin"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


SEVERITY_ORDER = {Severity.CRITICAL: 0, Severity.HIGH: 1, Severity.MEDIUM: 2}


@dataclass
class Recommendation:
    type: str
    title: str
    description: str
    action: str


@dataclass
class ProfitabilityIssue:
    """
    单个盈利问题，每次请求即时计算，不落库。

    属性:
        asin (str): 商品 ASIN。
        parent_asin (str | None): 子体行所属父体。
        sku / display_name: 商品目录信息。
        sales / advertising_spend / fees / net_profit / margin (Decimal): 行指标。
        units_sold (int): 净销量。
        issue_type (IssueType): 亏损或低利润率。
        severity (Severity): 严重程度。
        recommendation (Recommendation): 针对主要成本项的建议。
    """

    asin: str
    parent_asin: str | None
    sku: str | None
    display_name: str | None
    sales: Decimal
    advertising_spend: Decimal
    fees: Decimal
    net_profit: Decimal
    margin: Decimal
    units_sold: int
    issue_type: IssueType
    severity: Severity
    recommendation: Recommendation


@dataclass
class IssuePage:
    issues: List[ProfitabilityIssue]
    pagination: Pagination


def _ratio(amount: Decimal, sales: Decimal) -> Decimal:
    if sales <= ZERO:
        return ZERO
    return amount / sales * HUNDRED


def recommend(row: ProductRow) -> Recommendation:
    """
    功能说明:
        按占销售额比例最高的成本项选择建议：广告占比 > 50% 建议缩减广告；
        费用占比 > 40% 建议优化费用；无销售但有成本建议暂停并复查；其余建议复查定价与成本。
    参数:
        row (ProductRow): 已被标记为问题的行。
    返回:
        Recommendation: 建议内容。
    """
    ads_ratio = _ratio(row.advertising_spend, row.sales)
    fees_ratio = _ratio(row.fees, row.sales)
    if ads_ratio > ADS_RATIO_THRESHOLD:
        return Recommendation(
            type="reduce_ads",
            title="High Ad Spend Relative to Sales",
            description=f"Ad spend is {ads_ratio:.0f}% of sales. Consider reducing PPC spend or improving ad targeting.",
            action="Review PPC campaigns for this ASIN and reduce bids on low-performing keywords.",
        )
    if fees_ratio > FEES_RATIO_THRESHOLD:
        return Recommendation(
            type="optimize_fees",
            title="High Amazon Fees",
            description=f"Amazon fees are {fees_ratio:.0f}% of sales. Consider optimizing fulfillment or pricing.",
            action="Review product dimensions and weight for FBA fee accuracy. Consider a price increase.",
        )
    if row.sales == ZERO and (row.advertising_spend > ZERO or row.fees > ZERO):
        return Recommendation(
            type="no_sales",
            title="No Sales with Expenses",
            description="Product has no sales but is incurring fees or ad costs.",
            action="Pause ads for this product and review listing quality, pricing and inventory status.",
        )
    return Recommendation(
        type="price_review",
        title="Price Review Needed",
        description=f"Product is operating at a {row.margin:.1f}% margin. Combined costs leave little or no profit.",
        action="Increase product price, reduce costs, or consider discontinuing if margins cannot be improved.",
    )


def classify_row(row: ProductRow) -> Tuple[IssueType, Severity] | None:
    """未达到问题标准时返回 None。"""
    if row.gross_profit < ZERO:
        return IssueType.NEGATIVE_PROFIT, Severity.CRITICAL
    if row.margin < LOW_MARGIN_THRESHOLD:
        severity = Severity.HIGH if row.margin < HIGH_SEVERITY_MARGIN else Severity.MEDIUM
        return IssueType.LOW_MARGIN, severity
    return None


def flatten_rows(rows: Iterable[ProductRow]) -> Iterator[ProductRow]:
    for row in rows:
        yield row
        yield from flatten_rows(row.children)


def detect_issues(rows: Iterable[ProductRow]) -> List[ProfitabilityIssue]:
    """
    功能说明:
        遍历父体行与子体行，标记利润率 < 10% 或亏损的行，
        按严重程度、利润率升序、ASIN 排序。
    参数:
        rows (Iterable[ProductRow]): 父体行（子体嵌套在 children 中）。
    返回:
        List[ProfitabilityIssue]: 排序后的问题列表。
    """
    issues: List[ProfitabilityIssue] = []
    for row in flatten_rows(rows):
        classified = classify_row(row)
        if classified is None:
            continue
        issue_type, severity = classified
        issues.append(
            ProfitabilityIssue(
                asin=row.asin,
                parent_asin=row.parent_asin,
                sku=row.sku,
                display_name=row.display_name,
                sales=row.sales,
                advertising_spend=row.advertising_spend,
                fees=row.fees,
                net_profit=quantize(row.gross_profit),
                margin=row.margin,
                units_sold=row.units_sold,
                issue_type=issue_type,
                severity=severity,
                recommendation=recommend(row),
            )
        )
    issues.sort(key=lambda issue: (SEVERITY_ORDER[issue.severity], issue.margin, issue.asin))
    return issues


def summarize_issues(issues: Iterable[ProfitabilityIssue]) -> Dict[str, object]:
    by_type = {item.value: 0 for item in IssueType}
    by_severity = {item.value: 0 for item in Severity}
    total = 0
    for issue in issues:
        total += 1
        by_type[issue.issue_type.value] += 1
        by_severity[issue.severity.value] += 1
    return {"total_issues": total, "by_type": by_type, "by_severity": by_severity}


def paginate_issues(issues: List[ProfitabilityIssue], page: int = 1, limit: int = 10) -> IssuePage:
    validate_page(page, limit)
    offset = (page - 1) * limit
    return IssuePage(
        issues=issues[offset : offset + limit],
        pagination=make_pagination(page, limit, len(issues)),
    )
