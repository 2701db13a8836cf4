"""提供利润表、问题列表与指标文档的结构化与文本格式化工具。"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, Iterable, List, Mapping

from ..metrics.grouping import Pagination, ProductRow, TablePage
from ..metrics.issues import IssuePage, ProfitabilityIssue
from ..metrics.rollups import DateRollup, EconomicsTotals
from ..storage.repository import MetricsDocument
from ..utils.money import as_float


def _amounts(values: Mapping[str, Decimal]) -> Dict[str, float]:
    return {key: as_float(value) for key, value in values.items()}


def pagination_to_dict(pagination: Pagination) -> Dict[str, object]:
    return {
        "page": pagination.page,
        "limit": pagination.limit,
        "totalItems": pagination.total_items,
        "totalPages": pagination.total_pages,
        "hasMore": pagination.has_more,
    }


def row_to_dict(row: ProductRow) -> Dict[str, object]:
    """
    功能说明:
        将 ProductRow 转换为可 JSON 序列化的字典（驼峰命名），子体行递归转换。
    参数:
        row (ProductRow): 利润表行。
    返回:
        Dict[str, object]: 序列化后的行。
    """
    return {
        "asin": row.asin,
        "parentAsin": row.parent_asin,
        "sku": row.sku,
        "displayName": row.display_name,
        "sales": as_float(row.sales),
        "unitsSold": row.units_sold,
        "advertisingSpend": as_float(row.advertising_spend),
        "fees": as_float(row.fees),
        "grossProfit": as_float(row.gross_profit),
        "reportedProfit": as_float(row.reported_profit),
        "margin": as_float(row.margin),
        "isExpandable": row.is_expandable,
        "children": [row_to_dict(child) for child in row.children],
    }


def table_page_to_dict(page: TablePage) -> Dict[str, object]:
    return {
        "rows": [row_to_dict(row) for row in page.rows],
        "pagination": pagination_to_dict(page.pagination),
        "totalParents": page.total_parents,
        "totalChildren": page.total_children,
    }


def issue_to_dict(issue: ProfitabilityIssue) -> Dict[str, object]:
    return {
        "asin": issue.asin,
        "parentAsin": issue.parent_asin,
        "sku": issue.sku,
        "displayName": issue.display_name,
        "sales": as_float(issue.sales),
        "advertisingSpend": as_float(issue.advertising_spend),
        "fees": as_float(issue.fees),
        "netProfit": as_float(issue.net_profit),
        "margin": as_float(issue.margin),
        "unitsSold": issue.units_sold,
        "issueType": issue.issue_type.value,
        "severity": issue.severity.value,
        "recommendation": {
            "type": issue.recommendation.type,
            "title": issue.recommendation.title,
            "description": issue.recommendation.description,
            "action": issue.recommendation.action,
        },
    }


def issue_summary_to_dict(summary: Mapping[str, object]) -> Dict[str, object]:
    by_type = summary["by_type"]
    by_severity = summary["by_severity"]
    return {
        "totalIssues": summary["total_issues"],
        "byType": {"negativeProfit": by_type["negative_profit"], "lowMargin": by_type["low_margin"]},
        "bySeverity": {
            "critical": by_severity["critical"],
            "high": by_severity["high"],
            "medium": by_severity["medium"],
        },
    }


def issue_page_to_dict(page: IssuePage, summary: Mapping[str, object]) -> Dict[str, object]:
    return {
        "issues": [issue_to_dict(issue) for issue in page.issues],
        "pagination": pagination_to_dict(page.pagination),
        "summary": issue_summary_to_dict(summary),
    }


def document_to_dict(document: MetricsDocument) -> Dict[str, object]:
    """
    功能说明:
        将指标文档转换为摘要字典，不展开 ASIN 明细（分片文档本身也不含明细）。
    参数:
        document (MetricsDocument): 已持久化的指标文档。
    返回:
        Dict[str, object]: 序列化后的文档摘要。
    """
    return {
        "id": document.id,
        "accountId": document.account_id,
        "region": document.region,
        "marketplace": document.marketplace,
        "dateRange": {"startDate": document.start, "endDate": document.end},
        "currency": document.currency,
        "source": document.source,
        "isLargeDataset": document.is_large_dataset,
        "createdAt": document.created_at,
        "totals": totals_to_dict(document.totals),
        "datewise": datewise_to_list(document.datewise),
    }


def totals_to_dict(totals: EconomicsTotals) -> Dict[str, object]:
    return {
        "sales": as_float(totals.sales),
        "grossProfit": as_float(totals.gross_profit),
        "refunds": as_float(totals.refunds),
        "advertisingSpend": as_float(totals.advertising_spend),
        "platformFees": as_float(totals.platform_fees),
        "unitsSold": totals.units_sold,
        "feeTotals": _amounts(totals.fee_totals),
        "feeBreakdown": _amounts(totals.fee_breakdown),
    }


def datewise_to_list(datewise: Iterable[DateRollup]) -> List[Dict[str, object]]:
    return [
        {"date": item.day, "sales": as_float(item.sales), "grossProfit": as_float(item.gross_profit)}
        for item in datewise
    ]


def _money(value: Decimal, currency: str) -> str:
    return f"{currency} " + format(as_float(value), ",.2f")


def _format_row_line(idx: int, row: ProductRow, currency: str, indent: str = "") -> str:
    name = row.display_name or row.sku or row.asin
    return (
        f"{indent}{idx}. {name} ({row.asin}) - Sales {_money(row.sales, currency)}, "
        f"Ads {_money(row.advertising_spend, currency)}, Fees {_money(row.fees, currency)}, "
        f"Profit {_money(row.gross_profit, currency)}, Margin {as_float(row.margin):.2f}%"
    )


def format_text_report(document: MetricsDocument, page: TablePage | None = None) -> str:
    """
    功能说明:
        生成适合在控制台展示的利润概览文本。
    参数:
        document (MetricsDocument): 指标文档。
        page (TablePage | None): 可选的利润表分页。
    返回:
        str: 多行字符串，包含窗口信息、合计与父体行。
    """
    totals = document.totals
    currency = document.currency
    lines: List[str] = []
    lines.append(f"Window: {document.start} to {document.end} ({document.marketplace})")
    lines.append(f"Source: {document.source}, metrics id {document.id}, large dataset: {document.is_large_dataset}")
    lines.append(
        f"Totals: Sales {_money(totals.sales, currency)}, Gross Profit {_money(totals.gross_profit, currency)}, "
        f"Refunds {_money(totals.refunds, currency)}, Ads {_money(totals.advertising_spend, currency)}, "
        f"Fees {_money(totals.platform_fees, currency)}, Units {totals.units_sold}"
    )
    if page is None:
        return "\n".join(lines)
    if not page.rows:
        lines.append("No product records available.")
        return "\n".join(lines)

    pagination = page.pagination
    lines.append(f"Products (page {pagination.page}/{pagination.total_pages}, by sales):")
    offset = (pagination.page - 1) * pagination.limit
    for idx, row in enumerate(page.rows, start=offset + 1):
        lines.append(_format_row_line(idx, row, currency))
        for child_idx, child in enumerate(row.children, start=1):
            lines.append(_format_row_line(child_idx, child, currency, indent="    "))
    return "\n".join(lines)


def format_issue_lines(issues: Iterable[ProfitabilityIssue]) -> List[str]:
    return [
        f"[{issue.severity.value}] {issue.asin} {issue.issue_type.value}: margin {as_float(issue.margin):.2f}%, "
        f"profit {as_float(issue.net_profit):,.2f} -> {issue.recommendation.title}"
        for issue in issues
    ]
