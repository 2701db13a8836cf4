from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple

from ..config import MARKETPLACE_IDS, AppConfig, validate_region_marketplace
from ..data_sources.base import EconomicsFeedSource
from ..ingest.parser import ParseResult, parse_economics_batch
from ..metrics.rollups import EconomicsMetrics, Projection, aggregate_records
from ..storage.repository import MetricsDocument, MetricsStore
from ..storage.sharding import persist_metrics
from ..utils.dates import recent_period

logger = logging.getLogger(__name__)


class EconomicsFetchError(RuntimeError):
    """上游拉取失败且没有可回退的历史文档。"""


@dataclass
class IngestionResult:
    """
    一次摄取运行的结果。

    属性:
        document (MetricsDocument): 新保存或被复用的文档。
        metrics (Optional[EconomicsMetrics]): 本次聚合结果，复用历史文档时为 None。
        parse (Optional[ParseResult]): 解析统计。
        using_cached_data (bool): 上游失败后回退到了历史文档。
        reused (bool): 历史文档足够新，未重新拉取。
    """

    document: MetricsDocument
    metrics: Optional[EconomicsMetrics] = None
    parse: Optional[ParseResult] = None
    using_cached_data: bool = False
    reused: bool = False


def _is_fresh(document: MetricsDocument, max_age: timedelta) -> bool:
    if not document.created_at:
        return False
    created = datetime.fromisoformat(document.created_at)
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - created <= max_age


class EconomicsPipeline:
    """调度批次拉取、解析、聚合与持久化的主流程。"""

    def __init__(self, *, config: AppConfig, store: MetricsStore, feed: EconomicsFeedSource) -> None:
        """初始化管道。

        参数:
            config: 全局配置对象，提供默认窗口、分片阈值等参数。
            store: 文档存储。
            feed: 经济数据批次来源（可为文件或模拟）。
        """
        self._config = config
        self._store = store
        self._feed = feed

    async def run(
        self,
        *,
        account_id: str,
        region: str,
        marketplace: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        max_age: Optional[timedelta] = None,
        pre_flagged: bool = False,
    ) -> IngestionResult:
        """执行一次摄取。

        参数:
            account_id: 账号标识。
            region: 区域代码，先于任何拉取动作校验。
            marketplace: 站点代码。
            start / end: 日期范围，未提供则使用配置窗口。
            max_age: 最新文档在该时长内则直接复用，None 时取配置值。
            pre_flagged: 上游已知为大数据量账号，直接走分片存储。

        返回:
            IngestionResult，包含文档与运行统计。

        异常:
            InvalidMarketplaceError: 区域与站点组合不合法。
            EconomicsFetchError: 拉取失败且没有历史文档可回退。
        """
        validate_region_marketplace(region, marketplace)
        region = region.upper()
        marketplace = marketplace.upper()
        engine = self._config.engine

        if max_age is None and engine.max_age_hours > 0:
            max_age = timedelta(hours=engine.max_age_hours)
        if max_age is not None:
            await self._store.initialize()
            latest = await self._store.fetch_latest(account_id, marketplace)
            if latest is not None and _is_fresh(latest, max_age):
                logger.info("Reusing metrics %s for %s/%s (fresh within %s)", latest.id, account_id, marketplace, max_age)
                return IngestionResult(document=latest, reused=True)

        if start is None or end is None:
            start, end = recent_period(engine.window_days)

        try:
            batch = await self._feed.fetch_batch(region, marketplace, start, end)
        except Exception as exc:
            logger.warning("Economics fetch from %s failed: %s", self._feed.name, exc)
            await self._store.initialize()
            latest = await self._store.fetch_latest(account_id, marketplace)
            if latest is None:
                raise EconomicsFetchError(
                    f"Failed to fetch economics data for {account_id}/{marketplace} and no stored metrics exist"
                ) from exc
            logger.warning("Falling back to stored metrics %s created at %s", latest.id, latest.created_at)
            return IngestionResult(document=latest, using_cached_data=True)

        parsed = parse_economics_batch(batch, default_marketplace_id=MARKETPLACE_IDS.get(marketplace, ""))
        metrics = await aggregate_records(
            parsed.records,
            start=start,
            end=end,
            marketplace=marketplace,
            projection=Projection.FULL,
            yield_every=engine.yield_every,
        )
        await self._store.initialize()
        document = await persist_metrics(
            self._store,
            metrics,
            account_id=account_id,
            region=region,
            source=self._feed.name,
            threshold=engine.shard_threshold,
            pre_flagged=pre_flagged,
            batch_size=engine.shard_batch_size,
        )
        return IngestionResult(document=document, metrics=metrics, parse=parsed)

    async def summarize(
        self,
        *,
        region: str,
        marketplace: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> Tuple[EconomicsMetrics, ParseResult]:
        """只计算全局与按日合计的快速摘要，不落库。

        异常:
            InvalidMarketplaceError: 区域与站点组合不合法。
            EconomicsFetchError: 拉取失败（摘要没有历史文档可回退）。
        """
        validate_region_marketplace(region, marketplace)
        marketplace = marketplace.upper()
        engine = self._config.engine
        if start is None or end is None:
            start, end = recent_period(engine.window_days)
        try:
            batch = await self._feed.fetch_batch(region.upper(), marketplace, start, end)
        except Exception as exc:
            raise EconomicsFetchError(f"Failed to fetch economics data for {region}/{marketplace}") from exc
        parsed = parse_economics_batch(batch, default_marketplace_id=MARKETPLACE_IDS.get(marketplace, ""))
        metrics = await aggregate_records(
            parsed.records,
            start=start,
            end=end,
            marketplace=marketplace,
            projection=Projection.TOTALS,
            yield_every=engine.yield_every,
        )
        return metrics, parsed
