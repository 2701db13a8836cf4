from decimal import Decimal

import pytest

from economics_dashboard.metrics.grouping import ProductRow, build_product_row
from economics_dashboard.metrics.issues import (
    IssueType,
    Severity,
    detect_issues,
    paginate_issues,
    summarize_issues,
)
from economics_dashboard.metrics.rollups import AsinRollup


def _row(asin, sales, ads=0, fees=0, ad_spend=None):
    rollup = AsinRollup(
        asin=asin,
        sales=Decimal(str(sales)),
        advertising_spend=Decimal(str(ads)),
        platform_fees=Decimal(str(fees)),
    )
    return build_product_row(rollup, ad_spend=ad_spend)


def test_healthy_row_is_not_an_issue():
    assert detect_issues([_row("OK", 100, ads=50, fees=40)]) == []


def test_severity_and_recommendations():
    rows = [
        _row("LOSS-ADS", 100, ads=60, fees=50),
        _row("LOW-ADS", 100, ads=65, fees=30),
        _row("LOW-FEES", 100, ads=50, fees=45),
        _row("NO-SALES", 0, fees=5),
        _row("IDLE", 0),
    ]

    issues = {issue.asin: issue for issue in detect_issues(rows)}

    assert issues["LOSS-ADS"].issue_type is IssueType.NEGATIVE_PROFIT
    assert issues["LOSS-ADS"].severity is Severity.CRITICAL
    assert issues["LOSS-ADS"].recommendation.type == "reduce_ads"

    assert issues["LOW-ADS"].issue_type is IssueType.LOW_MARGIN
    assert issues["LOW-ADS"].severity is Severity.MEDIUM
    assert issues["LOW-ADS"].margin == Decimal("5.00")
    assert issues["LOW-ADS"].recommendation.type == "reduce_ads"

    assert issues["LOW-FEES"].severity is Severity.MEDIUM
    assert issues["LOW-FEES"].recommendation.type == "optimize_fees"

    assert issues["NO-SALES"].severity is Severity.CRITICAL
    assert issues["NO-SALES"].recommendation.type == "no_sales"

    assert issues["IDLE"].issue_type is IssueType.LOW_MARGIN
    assert issues["IDLE"].severity is Severity.HIGH
    assert issues["IDLE"].margin == Decimal("0")
    assert issues["IDLE"].recommendation.type == "price_review"


def test_issue_order_is_severity_then_margin():
    rows = [
        _row("MEDIUM", 100, ads=45, fees=48),
        _row("HIGH", 100, ads=49, fees=49),
        _row("CRIT-SMALL", 100, ads=60, fees=41),
        _row("CRIT-BIG", 100, ads=90, fees=40),
    ]

    issues = detect_issues(rows)

    assert [issue.asin for issue in issues] == ["CRIT-BIG", "CRIT-SMALL", "HIGH", "MEDIUM"]


def test_external_ad_spend_overrides_rollup():
    row = _row("A", 100, ads=1, fees=10, ad_spend={"A": Decimal("95")})

    issue = detect_issues([row])[0]

    assert issue.advertising_spend == Decimal("95.00")
    assert issue.net_profit == Decimal("-5.00")


def test_children_are_checked_alongside_parent():
    child_ok = _row("C1", 100, fees=10)
    child_bad = _row("C2", 10, fees=20)
    parent = ProductRow(asin="P", sales=Decimal("110"), fees=Decimal("30"), gross_profit=Decimal("80"),
                        margin=Decimal("72.73"), is_expandable=True, children=[child_ok, child_bad])

    issues = detect_issues([parent])

    assert [issue.asin for issue in issues] == ["C2"]


def test_summary_and_pagination():
    rows = [_row(f"A{i}", 100, ads=60, fees=50) for i in range(3)] + [_row("B", 100, ads=49, fees=49)]
    issues = detect_issues(rows)

    summary = summarize_issues(issues)
    assert summary == {
        "total_issues": 4,
        "by_type": {"negative_profit": 3, "low_margin": 1},
        "by_severity": {"critical": 3, "high": 1, "medium": 0},
    }

    page = paginate_issues(issues, page=2, limit=3)
    assert [issue.asin for issue in page.issues] == ["B"]
    assert page.pagination.total_items == 4
    assert page.pagination.total_pages == 2
    assert page.pagination.has_more is False

    with pytest.raises(ValueError):
        paginate_issues(issues, page=0, limit=3)
