"""经济数据仪表盘的命令行入口，串联批次摄取、利润表与问题报告。"""

import argparse
import asyncio
import json
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import AppConfig
from .data_sources.economics_feed import FileEconomicsFeedSource, MockEconomicsFeedSource
from .metrics.grouping import paginate_parent_groups
from .metrics.issues import IssueType, Severity
from .reporting.formatter import format_text_report, table_page_to_dict
from .services import (
    ServiceContext,
    create_service_context,
    economics_history,
    get_profitability_issues,
    ingest_economics,
    migrate_metrics_to_shards,
    summarize_economics,
)
from .storage.sharding import asin_storage_for

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    功能说明:
        构建并解析命令行参数，返回解析后的命名空间。
    参数:
        argv (Optional[List[str]]): 手动传入的参数列表，None 时读取 sys.argv。
    返回:
        argparse.Namespace: 包含用户指定的子命令与运行选项。
    """
    parser = argparse.ArgumentParser(description="Seller economics dashboard runner")
    parser.add_argument("--db-path", type=Path, help="Override SQLite database path.")
    parser.add_argument("--account", default="demo", help="Account identifier.")
    parser.add_argument("--marketplace", default="US", help="Marketplace code, e.g. US/JP/DE.")
    parser.add_argument("--output-json", type=Path, help="Path to save the JSON payload.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Fetch, aggregate and persist an economics batch.")
    ingest.add_argument("--region", default="NA", help="Region code: NA/EU/FE.")
    ingest.add_argument("--input", type=Path, help="JSONL file (or directory) to ingest; mock data when omitted.")
    ingest.add_argument("--start", type=str, help="Optional start date, format YYYY-MM-DD.")
    ingest.add_argument("--end", type=str, help="Optional end date, format YYYY-MM-DD.")
    ingest.add_argument("--max-age-hours", type=float, help="Reuse the latest metrics when newer than this.")
    ingest.add_argument("--large", action="store_true", help="Force sharded storage for this run.")

    table = subparsers.add_parser("table", help="Show one page of the parent/child profitability table.")
    table.add_argument("--page", type=int, default=1)
    table.add_argument("--limit", type=int, help="Parents per page.")

    issues = subparsers.add_parser("issues", help="List profitability issues.")
    issues.add_argument("--page", type=int, default=1)
    issues.add_argument("--limit", type=int, help="Issues per page.")

    history = subparsers.add_parser("history", help="List stored metrics overlapping a date range.")
    history.add_argument("--start", required=True, help="Start date, format YYYY-MM-DD.")
    history.add_argument("--end", required=True, help="End date, format YYYY-MM-DD.")

    summary = subparsers.add_parser("summary", help="Fetch a batch and show totals only, without saving.")
    summary.add_argument("--region", default="NA", help="Region code: NA/EU/FE.")
    summary.add_argument("--input", type=Path, help="JSONL file (or directory) to read; mock data when omitted.")
    summary.add_argument("--start", type=str, help="Optional start date, format YYYY-MM-DD.")
    summary.add_argument("--end", type=str, help="Optional end date, format YYYY-MM-DD.")

    migrate = subparsers.add_parser("migrate", help="Move a stored metrics document to sharded storage.")
    migrate.add_argument("--metrics-id", type=int, required=True, help="Metrics document id.")
    return parser.parse_args(argv)


def build_context(args: argparse.Namespace) -> ServiceContext:
    """
    功能说明:
        基于环境变量与 CLI 覆盖项构建业务上下文。
    参数:
        args (argparse.Namespace): 命令行解析得到的参数集合。
    返回:
        ServiceContext: 用于执行子命令的上下文。
    """
    config = AppConfig.from_env()
    if args.db_path:
        config = replace(config, storage=replace(config.storage, db_path=str(args.db_path)))
    input_path = getattr(args, "input", None)
    feed = FileEconomicsFeedSource(input_path) if input_path else MockEconomicsFeedSource()
    return create_service_context(config, feed=feed)


async def _run_ingest(context: ServiceContext, args: argparse.Namespace) -> Dict[str, Any]:
    payload = await ingest_economics(
        context,
        account_id=args.account,
        region=args.region,
        marketplace=args.marketplace,
        start=args.start,
        end=args.end,
        max_age_hours=args.max_age_hours,
        pre_flagged=args.large,
    )
    metrics = payload["metrics"]
    totals = metrics["totals"]
    print(
        f"Metrics {metrics['id']} saved: {metrics['dateRange']['startDate']}~{metrics['dateRange']['endDate']} | "
        f"Sales {totals['sales']:,.2f} {metrics['currency']} | Large dataset {metrics['isLargeDataset']}"
    )
    if payload["usingCachedData"]:
        print("Upstream fetch failed; showing the latest stored metrics instead.")
    return payload


async def _run_table(context: ServiceContext, args: argparse.Namespace) -> Dict[str, Any]:
    store = context.store
    await store.initialize()
    latest = await store.fetch_latest(args.account, args.marketplace.upper())
    if latest is None:
        print("No metrics stored yet; run `ingest` first.")
        return {}
    spend = await context.ad_spend.fetch_spend_by_asin(args.account, args.marketplace.upper())
    storage = asin_storage_for(latest, store, batch_size=context.config.engine.shard_batch_size)
    page = await paginate_parent_groups(
        storage,
        page=args.page,
        limit=args.limit or context.config.engine.page_size,
        ad_spend=spend,
    )
    print(format_text_report(latest, page))
    return table_page_to_dict(page)


async def _run_issues(context: ServiceContext, args: argparse.Namespace) -> Dict[str, Any]:
    payload = await get_profitability_issues(
        context, account_id=args.account, marketplace=args.marketplace, page=args.page, limit=args.limit
    )
    if payload.get("message"):
        print(payload["message"])
        return payload
    summary = payload["summary"]
    print(
        f"Issues: {summary['totalIssues']} "
        f"({IssueType.NEGATIVE_PROFIT.value} {summary['byType']['negativeProfit']}, "
        f"{IssueType.LOW_MARGIN.value} {summary['byType']['lowMargin']}); "
        + ", ".join(f"{level.value} {summary['bySeverity'][level.value]}" for level in Severity)
    )
    for issue in payload["issues"]:
        print(
            f"[{issue['severity']}] {issue['asin']} margin {issue['margin']:.2f}% "
            f"profit {issue['netProfit']:,.2f} -> {issue['recommendation']['title']}"
        )
    return payload


async def _run_history(context: ServiceContext, args: argparse.Namespace) -> Dict[str, Any]:
    payload = await economics_history(
        context, account_id=args.account, marketplace=args.marketplace, start=args.start, end=args.end
    )
    if payload.get("message"):
        print(payload["message"])
    for item in payload["history"]:
        print(
            f"[{item['id']}] {item['dateRange']['startDate']}~{item['dateRange']['endDate']} | "
            f"Sales {item['totals']['sales']:,.2f} | Gross Profit {item['totals']['grossProfit']:,.2f} | "
            f"Created {item['createdAt']}"
        )
    return payload


async def _run_summary(context: ServiceContext, args: argparse.Namespace) -> Dict[str, Any]:
    payload = await summarize_economics(
        context, region=args.region, marketplace=args.marketplace, start=args.start, end=args.end
    )
    totals = payload["totals"]
    print(
        f"Summary {payload['dateRange']['startDate']}~{payload['dateRange']['endDate']} ({payload['marketplace']}) | "
        f"Sales {totals['sales']:,.2f} {payload['currency']} | Gross Profit {totals['grossProfit']:,.2f} | "
        f"Ads {totals['advertisingSpend']:,.2f} | Fees {totals['platformFees']:,.2f}"
    )
    for item in payload["datewise"]:
        print(f"  {item['date']}: Sales {item['sales']:,.2f}, Gross Profit {item['grossProfit']:,.2f}")
    return payload


async def _run_migrate(context: ServiceContext, args: argparse.Namespace) -> Dict[str, Any]:
    payload = await migrate_metrics_to_shards(context, metrics_id=args.metrics_id)
    print(f"Metrics {args.metrics_id} large dataset: {payload['metrics']['isLargeDataset']}")
    return payload


COMMANDS = {
    "ingest": _run_ingest,
    "table": _run_table,
    "issues": _run_issues,
    "history": _run_history,
    "summary": _run_summary,
    "migrate": _run_migrate,
}


def run_cli(argv: Optional[List[str]] = None) -> None:
    """
    功能说明:
        命令行主入口：读取参数、执行子命令、输出报告并按需写出 JSON。
    """
    logging.basicConfig(
        level=os.getenv("ECONOMICS_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args = parse_args(argv)
    context = build_context(args)
    logger.debug("Running command %s with database %s", args.command, context.config.storage.db_path)
    payload = asyncio.run(COMMANDS[args.command](context, args))

    if args.output_json and payload:
        # 写出 UTF-8 JSON 以保留中文提示信息。
        args.output_json.parent.mkdir(parents=True, exist_ok=True)
        args.output_json.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        print(f"JSON report written to: {args.output_json}")


if __name__ == "__main__":  # pragma: no cover
    run_cli()
