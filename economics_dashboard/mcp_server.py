"""Economics Dashboard MCP 服务模块，基于 FastMCP 暴露利润分析资源与工具。"""

import argparse
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from types import MethodType
from typing import Any, Dict, List, Optional, cast

from typing_extensions import TypedDict

from mcp.server.fastmcp import Context, FastMCP

from economics_dashboard.config import AppConfig
from economics_dashboard.reporting.formatter import document_to_dict
from economics_dashboard.services import (
    ServiceContext,
    create_service_context,
    delete_economics_metrics as _delete_economics_metrics,
    describe_config,
    generate_profitability_insights as _generate_profitability_insights,
    get_profitability_issue_summary as _get_profitability_issue_summary,
    get_profitability_issues as _get_profitability_issues,
    get_profitability_table as _get_profitability_table,
    ingest_economics as _ingest_economics,
    migrate_metrics_to_shards as _migrate_metrics_to_shards,
    record_advertising_spend as _record_advertising_spend,
    summarize_economics as _summarize_economics,
)
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response
from starlette.routing import Route


logger = logging.getLogger(__name__)
logging.basicConfig(
    level=os.getenv("ECONOMICS_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

GLOBAL_SERVICE_CONTEXT: Optional[ServiceContext] = None


class PaginationPayload(TypedDict):
    page: int
    limit: int
    totalItems: int
    totalPages: int
    hasMore: bool


class ProductRowPayload(TypedDict):
    asin: str
    parentAsin: Optional[str]
    sku: Optional[str]
    displayName: Optional[str]
    sales: float
    unitsSold: int
    advertisingSpend: float
    fees: float
    grossProfit: float
    reportedProfit: float
    margin: float
    isExpandable: bool
    children: List[Dict[str, Any]]


class ProfitabilityTableResultBase(TypedDict):
    rows: List[ProductRowPayload]
    pagination: Optional[PaginationPayload]


class ProfitabilityTableResult(ProfitabilityTableResultBase, total=False):
    totalParents: int
    totalChildren: int
    metricsId: int
    currency: str
    message: str


class IssueSummaryPayload(TypedDict):
    totalIssues: int
    byType: Dict[str, int]
    bySeverity: Dict[str, int]


class RecommendationPayload(TypedDict):
    type: str
    title: str
    description: str
    action: str


class IssuePayload(TypedDict):
    asin: str
    parentAsin: Optional[str]
    sku: Optional[str]
    displayName: Optional[str]
    sales: float
    advertisingSpend: float
    fees: float
    netProfit: float
    margin: float
    unitsSold: int
    issueType: str
    severity: str
    recommendation: RecommendationPayload


class ProfitabilityIssuesResultBase(TypedDict):
    issues: List[IssuePayload]
    pagination: Optional[PaginationPayload]


class ProfitabilityIssuesResult(ProfitabilityIssuesResultBase, total=False):
    summary: IssueSummaryPayload
    metricsId: int
    message: str


class IssueSummaryResult(TypedDict, total=False):
    summary: Optional[IssueSummaryPayload]
    metricsId: int
    message: str


class ParseStatsPayload(TypedDict):
    totalLines: int
    records: int
    skippedLines: int


class IngestEconomicsResultBase(TypedDict):
    metrics: Dict[str, Any]
    usingCachedData: bool
    reused: bool


class IngestEconomicsResult(IngestEconomicsResultBase, total=False):
    parse: ParseStatsPayload
    asinCount: int
    unknownProductRecords: int


class AdSpendEntryPayload(TypedDict):
    asin: str
    date: str
    spend: float


class RecordAdvertisingSpendResult(TypedDict):
    recorded: int


class InsightsReportPayload(TypedDict):
    summary: IssueSummaryPayload
    insights: str


class GenerateInsightsResult(TypedDict, total=False):
    report: Optional[InsightsReportPayload]
    message: str


class DeleteMetricsResult(TypedDict):
    deleted: bool
    metricsId: int


class MigrateMetricsResult(TypedDict):
    metrics: Dict[str, Any]


class SummaryResult(TypedDict):
    marketplace: str
    dateRange: Dict[str, Optional[str]]
    currency: str
    totals: Dict[str, Any]
    datewise: List[Dict[str, Any]]
    parse: ParseStatsPayload
    unknownProductRecords: int


class EconomicsAppContext:
    """封装 MCP 生命周期中共享的业务依赖。

    Attributes:
        service_context (ServiceContext): 包含存储、数据源、缓存、LLM 等资源的聚合上下文。
    """

    def __init__(self, service_context: ServiceContext) -> None:
        self.service_context = service_context


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[EconomicsAppContext]:
    """FastMCP 生命周期钩子，创建并共享业务上下文。

    Args:
        server (FastMCP): FastMCP 框架传入的服务器实例，本实现中仅为保持签名一致。

    Yields:
        EconomicsAppContext: 包含业务依赖的上下文对象，供请求期间复用。
    """

    config = AppConfig.from_env()
    service_context = create_service_context(config)
    await service_context.store.initialize()
    global GLOBAL_SERVICE_CONTEXT
    GLOBAL_SERVICE_CONTEXT = service_context
    yield EconomicsAppContext(service_context=service_context)


mcp = FastMCP(
    name="Economics Dashboard",
    instructions=(
        "Expose Amazon seller economics through MCP tools and resources. "
        "Ingest an economics batch first, then page through the parent/child profitability table "
        "and the profitability issues."
    ),
    lifespan=app_lifespan,
    streamable_http_path="/mcp",
)

_original_streamable_http_app = mcp.streamable_http_app


def _streamable_http_app_with_cors(self: FastMCP):
    app = _original_streamable_http_app()

    async def _handle_options(request):
        requested_headers = request.headers.get("Access-Control-Request-Headers", "")
        return Response(
            status_code=204,
            headers={
                "Access-Control-Allow-Origin": "*",
                "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
                "Access-Control-Allow-Headers": requested_headers or "*",
                "Access-Control-Max-Age": "600",
            },
        )

    app.router.routes.insert(
        0,
        Route(
            self.settings.streamable_http_path,
            _handle_options,
            methods=["OPTIONS"],
        ),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["MCP-Session-Id"],
    )
    return app


mcp.streamable_http_app = MethodType(_streamable_http_app_with_cors, mcp)

# Inspector 会读取该列表自动安装调试所需的三方依赖。
mcp.dependencies = [
    "langchain-core",
    "langchain-openai",
    "python-amazon-paapi",
]


def _service(ctx: Context) -> ServiceContext:
    """从请求上下文里提取共享业务依赖。"""

    try:
        return ctx.request_context.lifespan_context.service_context
    except (AttributeError, ValueError):
        pass
    if GLOBAL_SERVICE_CONTEXT is not None:
        return GLOBAL_SERVICE_CONTEXT
    raise RuntimeError("Service context is not available; lifespan may not be initialized.")


@mcp.resource("economics-dashboard://config", mime_type="application/json")
def read_configuration() -> Dict[str, Any]:
    """返回当前引擎配置，供客户端参考默认分页与分片参数。"""

    if GLOBAL_SERVICE_CONTEXT is None:
        return describe_config(AppConfig.from_env())
    return describe_config(GLOBAL_SERVICE_CONTEXT.config)


@mcp.resource("economics-dashboard://latest/{account_id}/{marketplace}", mime_type="application/json")
async def read_latest_metrics(account_id: str, marketplace: str) -> Dict[str, Any]:
    """读取账号在某站点最新的指标文档摘要。

    Args:
        account_id (str): 账号标识。
        marketplace (str): 站点代码。

    Returns:
        Dict[str, Any]: 文档摘要或提示信息。
    """

    if GLOBAL_SERVICE_CONTEXT is None:
        raise RuntimeError("Service context is not available; lifespan may not be initialized.")
    store = GLOBAL_SERVICE_CONTEXT.store
    latest = await store.fetch_latest(account_id, marketplace.upper())
    if latest is None:
        return {"message": f"No economics metrics stored for {account_id}/{marketplace}."}
    return {"metrics": document_to_dict(latest)}


@mcp.tool(name="ingest_economics")
async def tool_ingest_economics(
    ctx: Context,
    account_id: str,
    region: str,
    marketplace: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    max_age_hours: Optional[float] = None,
    pre_flagged: bool = False,
) -> IngestEconomicsResult:
    """拉取经济数据批次、聚合并持久化为指标文档。

    Args:
        ctx (Context): FastMCP 请求上下文。
        account_id (str): 账号标识。
        region (str): 区域代码（NA/EU/FE）。
        marketplace (str): 站点代码，须属于该区域。
        start (Optional[str]): 起始日期（ISO 字符串），未提供时使用配置窗口。
        end (Optional[str]): 结束日期（ISO 字符串）。
        max_age_hours (Optional[float]): 最新文档在该时长内则直接复用。
        pre_flagged (bool): 已知为大数据量账号时直接使用分片存储。

    Returns:
        Dict[str, Any]: 文档摘要、解析统计与回退标记。
    """

    result = await _ingest_economics(
        _service(ctx),
        account_id=account_id,
        region=region,
        marketplace=marketplace,
        start=start,
        end=end,
        max_age_hours=max_age_hours,
        pre_flagged=pre_flagged,
    )
    return cast(IngestEconomicsResult, result)


@mcp.tool(name="get_profitability_table")
async def tool_get_profitability_table(
    ctx: Context,
    account_id: str,
    marketplace: str,
    page: int = 1,
    limit: Optional[int] = None,
) -> ProfitabilityTableResult:
    """按父体分组、销售额降序分页返回利润表。

    Args:
        ctx (Context): FastMCP 请求上下文。
        account_id (str): 账号标识。
        marketplace (str): 站点代码。
        page (int): 从 1 开始的页码。
        limit (Optional[int]): 每页父体数量，默认取配置。

    Returns:
        Dict[str, Any]: 父体行（含子体）与分页信息。
    """

    result = await _get_profitability_table(
        _service(ctx), account_id=account_id, marketplace=marketplace, page=page, limit=limit
    )
    return cast(ProfitabilityTableResult, result)


@mcp.tool(name="get_profitability_issues")
async def tool_get_profitability_issues(
    ctx: Context,
    account_id: str,
    marketplace: str,
    page: int = 1,
    limit: Optional[int] = None,
) -> ProfitabilityIssuesResult:
    """分页返回低利润率与亏损商品及建议。"""

    result = await _get_profitability_issues(
        _service(ctx), account_id=account_id, marketplace=marketplace, page=page, limit=limit
    )
    return cast(ProfitabilityIssuesResult, result)


@mcp.tool(name="get_profitability_issue_summary")
async def tool_get_profitability_issue_summary(
    ctx: Context,
    account_id: str,
    marketplace: str,
) -> IssueSummaryResult:
    """按类型与严重程度统计盈利问题数量。"""

    result = await _get_profitability_issue_summary(_service(ctx), account_id=account_id, marketplace=marketplace)
    return cast(IssueSummaryResult, result)


@mcp.tool(name="record_advertising_spend")
async def tool_record_advertising_spend(
    ctx: Context,
    account_id: str,
    marketplace: str,
    entries: List[AdSpendEntryPayload],
) -> RecordAdvertisingSpendResult:
    """写入原始广告花费并失效广告花费缓存。

    Args:
        ctx (Context): FastMCP 请求上下文。
        account_id (str): 账号标识。
        marketplace (str): 站点代码。
        entries (List[AdSpendEntryPayload]): 每行包含 asin、date 与 spend。

    Returns:
        Dict[str, Any]: 写入数量。
    """

    result = await _record_advertising_spend(
        _service(ctx),
        account_id=account_id,
        marketplace=marketplace,
        entries=[dict(entry) for entry in entries],
    )
    return cast(RecordAdvertisingSpendResult, result)


@mcp.tool(name="generate_profitability_insights")
async def tool_generate_profitability_insights(
    ctx: Context,
    account_id: str,
    marketplace: str,
    focus: Optional[str] = None,
) -> GenerateInsightsResult:
    """基于最新指标与问题列表生成自然语言洞察。"""

    result = await _generate_profitability_insights(
        _service(ctx), account_id=account_id, marketplace=marketplace, focus=focus
    )
    return cast(GenerateInsightsResult, result)


@mcp.tool(name="delete_economics_metrics")
async def tool_delete_economics_metrics(ctx: Context, metrics_id: int) -> DeleteMetricsResult:
    """删除指标文档及其全部分片。"""

    result = await _delete_economics_metrics(_service(ctx), metrics_id=metrics_id)
    return cast(DeleteMetricsResult, result)


@mcp.tool(name="summarize_economics")
async def tool_summarize_economics(
    ctx: Context,
    region: str,
    marketplace: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> SummaryResult:
    """拉取批次并只计算全局与按日合计，不保存文档。

    Args:
        ctx (Context): FastMCP 请求上下文。
        region (str): 区域代码（NA/EU/FE）。
        marketplace (str): 站点代码。
        start (Optional[str]): 起始日期（ISO 字符串）。
        end (Optional[str]): 结束日期（ISO 字符串）。

    Returns:
        Dict[str, Any]: 合计、按日汇总与解析统计。
    """

    result = await _summarize_economics(_service(ctx), region=region, marketplace=marketplace, start=start, end=end)
    return cast(SummaryResult, result)


@mcp.tool(name="migrate_metrics_to_shards")
async def tool_migrate_metrics_to_shards(ctx: Context, metrics_id: int) -> MigrateMetricsResult:
    """将内嵌存储的指标文档迁移为按日分片存储。"""

    result = await _migrate_metrics_to_shards(_service(ctx), metrics_id=metrics_id)
    return cast(MigrateMetricsResult, result)


def main(argv: Optional[list[str]] = None) -> None:
    """命令行入口，支持选择传输方式与监听参数。

    Args:
        argv (Optional[list[str]]): 手动传入的参数列表，通常由命令行自动提供。
    """

    parser = argparse.ArgumentParser(description="Run the Economics Dashboard MCP server.")
    parser.add_argument(
        "transport",
        nargs="?",
        default="stdio",
        choices=["stdio", "sse", "streamable-http"],
        help="Transport mechanism to expose (default: stdio).",
    )
    parser.add_argument("--host", default=None, help="Optional host binding for HTTP-based transports.")
    parser.add_argument("--port", type=int, default=None, help="Optional port binding for HTTP-based transports.")
    args = parser.parse_args(argv)

    if args.host:
        mcp.settings.host = args.host
    if args.port is not None:
        mcp.settings.port = args.port

    logger.info(
        "Starting MCP server transport=%s host=%s port=%s",
        args.transport,
        mcp.settings.host,
        mcp.settings.port,
    )
    mcp.run(transport=args.transport)


if __name__ == "__main__":
    main()
