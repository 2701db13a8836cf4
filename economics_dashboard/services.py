from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .config import AppConfig
from .data_sources.ad_spend import CachedAdSpendProvider, StoredAdSpendProvider
from .data_sources.base import AdSpendProvider, EconomicsFeedSource, ProductCatalogProvider
from .data_sources.catalog import PaapiCatalogProvider
from .data_sources.economics_feed import MockEconomicsFeedSource
from .metrics.grouping import ProductRow, attach_catalog, build_all_rows, paginate_parent_groups, validate_page
from .metrics.issues import ProfitabilityIssue, detect_issues, paginate_issues, summarize_issues
from .pipeline.pipeline import EconomicsPipeline
from .reporting.formatter import (
    datewise_to_list,
    document_to_dict,
    issue_page_to_dict,
    issue_summary_to_dict,
    table_page_to_dict,
    totals_to_dict,
)
from .storage.cache import Cache, InMemoryCache
from .storage.repository import MetricsDocument, MetricsStore, SQLiteMetricsStore
from .storage.sharding import asin_storage_for, migrate_to_shards
from .utils.money import to_decimal

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    config: AppConfig
    store: MetricsStore
    feed: EconomicsFeedSource
    ad_spend: AdSpendProvider
    catalog: Optional[ProductCatalogProvider] = None
    llm: Optional[ChatOpenAI] = None


def create_service_context(
    config: AppConfig,
    *,
    store: Optional[MetricsStore] = None,
    feed: Optional[EconomicsFeedSource] = None,
    cache: Optional[Cache] = None,
    catalog: Optional[ProductCatalogProvider] = None,
    llm: Optional[ChatOpenAI] = None,
) -> ServiceContext:
    store = store or SQLiteMetricsStore(config.storage.db_path)
    feed = feed or MockEconomicsFeedSource()
    ad_spend: AdSpendProvider = StoredAdSpendProvider(store)
    if config.cache.enabled:
        ad_spend = CachedAdSpendProvider(
            ad_spend,
            cache or InMemoryCache(config.cache.ttl_seconds),
            ttl_seconds=config.cache.ttl_seconds,
        )
    if catalog is None and not config.amazon.is_mock:
        catalog = PaapiCatalogProvider(config.amazon)
    if llm is None and config.openai_api_key:
        llm = ChatOpenAI(
            api_key=config.openai_api_key,
            model=config.openai_model,
            temperature=config.openai_temperature,
        )
    return ServiceContext(config=config, store=store, feed=feed, ad_spend=ad_spend, catalog=catalog, llm=llm)


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


async def _load_latest(
    context: ServiceContext, account_id: str, marketplace: str
) -> Tuple[Optional[MetricsDocument], Dict[str, Decimal]]:
    await context.store.initialize()
    latest, spend = await asyncio.gather(
        context.store.fetch_latest(account_id, marketplace),
        context.ad_spend.fetch_spend_by_asin(account_id, marketplace),
    )
    return latest, spend


async def _enrich(context: ServiceContext, account_id: str, marketplace: str, rows: Sequence[ProductRow]) -> None:
    if context.catalog is None or not rows:
        return
    asins: List[str] = []
    for row in rows:
        asins.extend(row.asins())
    catalog = await context.catalog.fetch_products(account_id, marketplace, asins)
    attach_catalog(rows, catalog)


def _no_metrics(account_id: str, marketplace: str) -> str:
    return f"No economics metrics stored for {account_id}/{marketplace}; run ingest first."


async def ingest_economics(
    context: ServiceContext,
    *,
    account_id: str,
    region: str,
    marketplace: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    max_age_hours: Optional[float] = None,
    pre_flagged: bool = False,
) -> Dict[str, Any]:
    pipeline = EconomicsPipeline(config=context.config, store=context.store, feed=context.feed)
    result = await pipeline.run(
        account_id=account_id,
        region=region,
        marketplace=marketplace,
        start=_parse_date(start),
        end=_parse_date(end),
        max_age=timedelta(hours=max_age_hours) if max_age_hours else None,
        pre_flagged=pre_flagged,
    )
    payload: Dict[str, Any] = {
        "metrics": document_to_dict(result.document),
        "usingCachedData": result.using_cached_data,
        "reused": result.reused,
    }
    if result.parse is not None:
        payload["parse"] = {
            "totalLines": result.parse.total_lines,
            "records": len(result.parse.records),
            "skippedLines": result.parse.skipped_lines,
        }
    if result.metrics is not None:
        payload["asinCount"] = result.metrics.asin_count
        payload["unknownProductRecords"] = result.metrics.unknown_product_records
    return payload


async def summarize_economics(
    context: ServiceContext,
    *,
    region: str,
    marketplace: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> Dict[str, Any]:
    """
    功能说明:
        拉取批次并只计算全局与按日合计，不保存文档，适合快速查看某个窗口的概况。
    返回:
        Dict[str, Any]: 合计、按日汇总与解析统计。
    """
    pipeline = EconomicsPipeline(config=context.config, store=context.store, feed=context.feed)
    metrics, parsed = await pipeline.summarize(
        region=region, marketplace=marketplace, start=_parse_date(start), end=_parse_date(end)
    )
    return {
        "marketplace": metrics.marketplace,
        "dateRange": {
            "startDate": metrics.start.isoformat() if metrics.start else None,
            "endDate": metrics.end.isoformat() if metrics.end else None,
        },
        "currency": metrics.currency,
        "totals": totals_to_dict(metrics.totals),
        "datewise": datewise_to_list(metrics.datewise),
        "parse": {
            "totalLines": parsed.total_lines,
            "records": len(parsed.records),
            "skippedLines": parsed.skipped_lines,
        },
        "unknownProductRecords": metrics.unknown_product_records,
    }


async def get_profitability_table(
    context: ServiceContext,
    *,
    account_id: str,
    marketplace: str,
    page: int = 1,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    limit = limit or context.config.engine.page_size
    validate_page(page, limit)
    latest, spend = await _load_latest(context, account_id, marketplace.upper())
    if latest is None:
        return {"rows": [], "pagination": None, "message": _no_metrics(account_id, marketplace)}

    storage = asin_storage_for(
        latest,
        context.store,
        batch_size=context.config.engine.shard_batch_size,
        yield_every=context.config.engine.yield_every,
    )
    table = await paginate_parent_groups(storage, page=page, limit=limit, ad_spend=spend)
    await _enrich(context, account_id, marketplace, table.rows)
    payload = table_page_to_dict(table)
    payload["metricsId"] = latest.id
    payload["currency"] = latest.currency
    return payload


async def _collect_issues(
    context: ServiceContext, account_id: str, marketplace: str
) -> Tuple[Optional[MetricsDocument], List[ProfitabilityIssue]]:
    latest, spend = await _load_latest(context, account_id, marketplace.upper())
    if latest is None:
        return None, []
    storage = asin_storage_for(
        latest,
        context.store,
        batch_size=context.config.engine.shard_batch_size,
        yield_every=context.config.engine.yield_every,
    )
    rows = await build_all_rows(storage, ad_spend=spend)
    return latest, detect_issues(rows)


async def get_profitability_issues(
    context: ServiceContext,
    *,
    account_id: str,
    marketplace: str,
    page: int = 1,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    limit = limit or context.config.engine.page_size
    validate_page(page, limit)
    latest, issues = await _collect_issues(context, account_id, marketplace)
    if latest is None:
        return {"issues": [], "pagination": None, "message": _no_metrics(account_id, marketplace)}
    issue_page = paginate_issues(issues, page, limit)
    if context.catalog is not None and issue_page.issues:
        catalog = await context.catalog.fetch_products(
            account_id, marketplace, [issue.asin for issue in issue_page.issues]
        )
        for issue in issue_page.issues:
            product = catalog.get(issue.asin)
            if product is not None:
                issue.sku = product.sku
                issue.display_name = product.display_name
    payload = issue_page_to_dict(issue_page, summarize_issues(issues))
    payload["metricsId"] = latest.id
    return payload


async def get_profitability_issue_summary(
    context: ServiceContext,
    *,
    account_id: str,
    marketplace: str,
) -> Dict[str, Any]:
    latest, issues = await _collect_issues(context, account_id, marketplace)
    if latest is None:
        return {"summary": None, "message": _no_metrics(account_id, marketplace)}
    return {"summary": issue_summary_to_dict(summarize_issues(issues)), "metricsId": latest.id}


async def record_advertising_spend(
    context: ServiceContext,
    *,
    account_id: str,
    marketplace: str,
    entries: List[Dict[str, Any]],
) -> Dict[str, Any]:
    """
    功能说明:
        写入原始广告花费行，并同步失效按 ASIN 汇总的缓存。
    参数:
        entries (List[Dict[str, Any]]): 形如 `{"asin": ..., "date": "YYYY-MM-DD", "spend": 12.3}` 的行。
    返回:
        Dict[str, Any]: 写入数量。
    """
    rows = []
    for entry in entries:
        asin = str(entry.get("asin") or "").strip()
        day = str(entry.get("date") or "").strip()
        if not asin or not day:
            raise ValueError(f"Advertising spend entry requires asin and date: {entry}")
        rows.append((asin, date.fromisoformat(day).isoformat(), to_decimal(entry.get("spend"))))
    marketplace = marketplace.upper()
    await context.store.initialize()
    written = await context.store.record_ad_spend(account_id, marketplace, rows)
    if isinstance(context.ad_spend, CachedAdSpendProvider):
        await context.ad_spend.invalidate(account_id, marketplace)
    logger.info("Recorded %s advertising spend rows for %s/%s", written, account_id, marketplace)
    return {"recorded": written}


async def generate_profitability_insights(
    context: ServiceContext,
    *,
    account_id: str,
    marketplace: str,
    focus: Optional[str] = None,
    max_issues: int = 20,
) -> Dict[str, Any]:
    if context.llm is None:
        raise RuntimeError("OPENAI_API_KEY 未配置，无法生成洞察。")
    latest, issues = await _collect_issues(context, account_id, marketplace)
    if latest is None:
        return {"report": None, "message": _no_metrics(account_id, marketplace)}
    issue_page = paginate_issues(issues, 1, max_issues)
    data = {
        "metrics": document_to_dict(latest),
        **issue_page_to_dict(issue_page, summarize_issues(issues)),
    }
    instructions = (
        "你是一名亚马逊利润分析师，请基于给定的利润指标与问题列表生成结构化洞察。"
        "按照“整体利润”“问题商品”“优先行动”三个部分输出。"
    )
    if focus:
        instructions += f" 优先关注：{focus}。"
    response = await context.llm.ainvoke(
        [
            SystemMessage(content=instructions),
            HumanMessage(content=f"请分析以下 JSON 数据：{json.dumps(data, ensure_ascii=False)}"),
        ]
    )
    return {"report": {"summary": issue_summary_to_dict(summarize_issues(issues)), "insights": response.content}}


async def delete_economics_metrics(context: ServiceContext, *, metrics_id: int) -> Dict[str, Any]:
    await context.store.initialize()
    deleted = await context.store.delete_document(metrics_id)
    return {"deleted": deleted, "metricsId": metrics_id}


async def economics_history(
    context: ServiceContext,
    *,
    account_id: str,
    marketplace: str,
    start: str,
    end: str,
) -> Dict[str, Any]:
    await context.store.initialize()
    documents = await context.store.fetch_by_date_range(
        account_id, marketplace.upper(), date.fromisoformat(start), date.fromisoformat(end)
    )
    if not documents:
        return {"history": [], "message": "数据库暂无历史记录。"}
    return {"history": [document_to_dict(document) for document in documents]}


async def migrate_metrics_to_shards(context: ServiceContext, *, metrics_id: int) -> Dict[str, Any]:
    await context.store.initialize()
    document = await context.store.fetch_document(metrics_id)
    if document is None:
        raise ValueError(f"Metrics document {metrics_id} not found")
    migrated = await migrate_to_shards(context.store, document, batch_size=context.config.engine.shard_batch_size)
    return {"metrics": document_to_dict(migrated)}


def describe_config(config: AppConfig) -> Dict[str, Any]:
    engine = config.engine
    return {
        "shardThreshold": engine.shard_threshold,
        "yieldEvery": engine.yield_every,
        "pageSize": engine.page_size,
        "shardBatchSize": engine.shard_batch_size,
        "windowDays": engine.window_days,
        "maxAgeHours": engine.max_age_hours,
        "storagePath": config.storage.db_path,
        "cacheEnabled": config.cache.enabled,
        "cacheTtlSeconds": config.cache.ttl_seconds,
        "catalog": "mock" if config.amazon.is_mock else "paapi",
        "llmConfigured": bool(config.openai_api_key),
    }
