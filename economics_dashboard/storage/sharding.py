"""ASIN 汇总的存储策略：小账号内嵌在文档中，大账号按日期拆分为分片。"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ..metrics.rollups import AsinRollup, EconomicsMetrics, merge_by_product
from ..utils.aio import DEFAULT_YIELD_EVERY, checkpoint
from ..utils.money import ZERO, quantize
from .repository import AsinShardRecord, MetricsDocument, MetricsStore

logger = logging.getLogger(__name__)

DEFAULT_SHARD_THRESHOLD = 1000
DEFAULT_SHARD_BATCH_SIZE = 50


def should_shard(asin_count: int, threshold: int = DEFAULT_SHARD_THRESHOLD, pre_flagged: bool = False) -> bool:
    """ASIN 数量达到阈值（或上游已标记为大数据量）时使用分片存储。"""
    return pre_flagged or asin_count >= threshold


@dataclass
class ParentGroup:
    """
    查询时临时组装的父体分组，不落库。

    属性:
        parent_asin (str): 分组键。
        total_sales (Decimal): 组内所有商品销售额之和（按分取整）。
        members (List[AsinRollup]): 组内商品级汇总，包含父体自身（若有记录）。
    """

    parent_asin: str
    total_sales: Decimal = ZERO
    members: List[AsinRollup] = field(default_factory=list)

    @property
    def children(self) -> List[AsinRollup]:
        return [member for member in self.members if member.asin != self.parent_asin]


def _sort_key(group: ParentGroup) -> Tuple[Decimal, str]:
    return -group.total_sales, group.parent_asin


async def group_products(
    products: Dict[str, AsinRollup], *, yield_every: int = DEFAULT_YIELD_EVERY
) -> List[ParentGroup]:
    """
    功能说明:
        将商品级汇总按父体归组，并按组销售额降序、父体 ID 升序排序。
    参数:
        products (Dict[str, AsinRollup]): `{asin: 商品级汇总}`。
        yield_every (int): 让出间隔。
    返回:
        List[ParentGroup]: 排好序的全部分组。
    """
    groups: Dict[str, ParentGroup] = {}
    for index, asin in enumerate(sorted(products), start=1):
        product = products[asin]
        group = groups.setdefault(product.group_key, ParentGroup(parent_asin=product.group_key))
        group.members.append(product)
        group.total_sales += product.sales
        await checkpoint(index, yield_every)
    for group in groups.values():
        group.total_sales = quantize(group.total_sales)
        group.members.sort(key=lambda item: (-item.sales, item.asin))
    return sorted(groups.values(), key=_sort_key)


class AsinStorage(ABC):
    """读取某份文档 ASIN 汇总的统一接口，调用方不关心底层是内嵌还是分片。"""

    def __init__(self, document: MetricsDocument, *, yield_every: int = DEFAULT_YIELD_EVERY) -> None:
        self.document = document
        self.yield_every = yield_every

    @abstractmethod
    def iter_entries(self) -> AsyncIterator[AsinRollup]:
        """按日期顺序流式返回按日 ASIN 汇总。"""

    async def product_totals(self) -> Dict[str, AsinRollup]:
        """合并所有日期得到商品级汇总。"""
        entries = [entry async for entry in self.iter_entries()]
        return await merge_by_product(entries, yield_every=self.yield_every)

    @abstractmethod
    async def count_parent_groups(self) -> Tuple[int, int]:
        """返回 (父体分组数, 子体数)。"""

    @abstractmethod
    async def parent_group_page(self, offset: int, limit: int) -> List[ParentGroup]:
        """返回排序后第 offset 起的 limit 个父体分组。"""


class EmbeddedAsinStorage(AsinStorage):
    """内嵌存储：汇总就在文档里，分组与分页在内存中完成。"""

    def __init__(self, document: MetricsDocument, *, yield_every: int = DEFAULT_YIELD_EVERY) -> None:
        super().__init__(document, yield_every=yield_every)
        self._groups: Optional[List[ParentGroup]] = None

    async def iter_entries(self) -> AsyncIterator[AsinRollup]:
        for index, entry in enumerate(self.document.asin_wise, start=1):
            yield entry
            await checkpoint(index, self.yield_every)

    async def _all_groups(self) -> List[ParentGroup]:
        if self._groups is None:
            products = await self.product_totals()
            self._groups = await group_products(products, yield_every=self.yield_every)
        return self._groups

    async def count_parent_groups(self) -> Tuple[int, int]:
        groups = await self._all_groups()
        return len(groups), sum(len(group.children) for group in groups)

    async def parent_group_page(self, offset: int, limit: int) -> List[ParentGroup]:
        groups = await self._all_groups()
        return groups[offset : offset + limit]


class ShardedAsinStorage(AsinStorage):
    """分片存储：分组与分页下推到存储层，只取回当前页父体下的子体。"""

    def __init__(
        self,
        document: MetricsDocument,
        store: MetricsStore,
        *,
        batch_size: int = DEFAULT_SHARD_BATCH_SIZE,
        yield_every: int = DEFAULT_YIELD_EVERY,
    ) -> None:
        super().__init__(document, yield_every=yield_every)
        if document.id is None:
            raise ValueError("Sharded storage requires a persisted metrics document")
        self.store = store
        self.batch_size = batch_size

    async def iter_entries(self) -> AsyncIterator[AsinRollup]:
        index = 0
        async for shard in self.store.iter_shards(self.document.id, batch_size=self.batch_size):
            for entry in shard.asin_sales:
                index += 1
                yield entry
                await checkpoint(index, self.yield_every)

    async def count_parent_groups(self) -> Tuple[int, int]:
        return await self.store.count_parent_groups(self.document.id)

    async def parent_group_page(self, offset: int, limit: int) -> List[ParentGroup]:
        keys = await self.store.fetch_parent_group_page(self.document.id, offset, limit)
        if not keys:
            return []
        members = await self.store.fetch_group_members(self.document.id, [key.parent_asin for key in keys])
        products = await merge_by_product(members, yield_every=self.yield_every)
        grouped = {group.parent_asin: group for group in await group_products(products, yield_every=self.yield_every)}
        # 保持存储层给出的分组顺序。
        return [grouped.get(key.parent_asin, ParentGroup(parent_asin=key.parent_asin)) for key in keys]


def asin_storage_for(
    document: MetricsDocument,
    store: MetricsStore,
    *,
    batch_size: int = DEFAULT_SHARD_BATCH_SIZE,
    yield_every: int = DEFAULT_YIELD_EVERY,
) -> AsinStorage:
    """根据文档的大数据量标记选择存储实现，是读取 ASIN 汇总的唯一入口。"""
    if document.is_large_dataset:
        return ShardedAsinStorage(document, store, batch_size=batch_size, yield_every=yield_every)
    return EmbeddedAsinStorage(document, yield_every=yield_every)


def _shards_by_day(metrics_id: int, entries: List[AsinRollup]) -> List[AsinShardRecord]:
    by_day: Dict[str, AsinShardRecord] = {}
    for entry in entries:
        day = entry.day or ""
        shard = by_day.setdefault(day, AsinShardRecord(metrics_id=metrics_id, day=day))
        shard.asin_sales.append(entry)
    return [by_day[day] for day in sorted(by_day)]


async def _write_shards(store: MetricsStore, shards: List[AsinShardRecord], batch_size: int) -> int:
    written = 0
    step = max(batch_size, 1)
    for offset in range(0, len(shards), step):
        written += await store.insert_shards(shards[offset : offset + step])
    return written


async def persist_metrics(
    store: MetricsStore,
    metrics: EconomicsMetrics,
    *,
    account_id: str,
    region: str,
    source: str,
    threshold: int = DEFAULT_SHARD_THRESHOLD,
    pre_flagged: bool = False,
    batch_size: int = DEFAULT_SHARD_BATCH_SIZE,
) -> MetricsDocument:
    """
    功能说明:
        保存一次聚合结果。ASIN 数量达到阈值时，文档内的 ASIN 集合留空，
        按日期写入分片并设置大数据量标记。分片写入失败时删除已保存的文档并重新抛出异常。
    参数:
        store (MetricsStore): 文档存储。
        metrics (EconomicsMetrics): 聚合结果。
        account_id (str): 账号标识。
        region (str): 区域代码。
        source (str): 数据来源名称。
        threshold (int): 分片阈值。
        pre_flagged (bool): 上游是否已标记为大数据量。
        batch_size (int): 每批写入的分片数量。
    返回:
        MetricsDocument: 已持久化的文档。
    """
    document = MetricsDocument.from_metrics(metrics, account_id=account_id, region=region, source=source)
    if not should_shard(metrics.asin_count, threshold, pre_flagged):
        saved = await store.save_document(document)
        logger.info("Saved metrics %s with %s embedded ASIN entries", saved.id, len(saved.asin_wise))
        return saved

    entries = document.asin_wise
    document.asin_wise = []
    document.is_large_dataset = True
    saved = await store.save_document(document)
    try:
        written = await _write_shards(store, _shards_by_day(saved.id, entries), batch_size)
    except Exception:
        # 分片不完整的文档不能留给 fetch_latest 读取。
        logger.error("Writing shards for metrics %s failed, removing the document", saved.id)
        await store.delete_document(saved.id)
        raise
    logger.info(
        "Saved metrics %s as large dataset: asins=%s shards=%s",
        saved.id,
        metrics.asin_count,
        written,
    )
    return saved


async def migrate_to_shards(
    store: MetricsStore,
    document: MetricsDocument,
    *,
    batch_size: int = DEFAULT_SHARD_BATCH_SIZE,
) -> MetricsDocument:
    """
    功能说明:
        将内嵌存储的文档迁移为分片存储；已是分片存储时原样返回。
    参数:
        store (MetricsStore): 文档存储。
        document (MetricsDocument): 已持久化的文档。
        batch_size (int): 每批写入的分片数量。
    返回:
        MetricsDocument: 迁移后的文档。
    """
    if document.is_large_dataset:
        return document
    if document.id is None:
        raise ValueError("Only persisted metrics documents can be migrated")

    written = await _write_shards(store, _shards_by_day(document.id, document.asin_wise), batch_size)
    await store.replace_asin_storage(document.id, [], True)
    logger.info("Migrated metrics %s to %s shards", document.id, written)
    document.asin_wise = []
    document.is_large_dataset = True
    return document
