"""按 ASIN 汇总的广告花费提供方及其缓存包装。"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict

from ..storage.cache import Cache
from ..storage.repository import MetricsStore
from ..utils.money import to_decimal
from .base import AdSpendProvider

logger = logging.getLogger(__name__)


class StoredAdSpendProvider(AdSpendProvider):
    """直接对存储中的原始广告花费行做分组求和。"""

    def __init__(self, store: MetricsStore) -> None:
        self._store = store

    async def fetch_spend_by_asin(self, account_id: str, marketplace: str) -> Dict[str, Decimal]:
        return await self._store.sum_ad_spend_by_asin(account_id, marketplace)


class CachedAdSpendProvider(AdSpendProvider):
    """
    Cache-aside 包装：先读缓存，未命中时计算并回写。

    缓存读写失败只记录日志并回退到直接计算，不会中断请求。
    """

    def __init__(self, inner: AdSpendProvider, cache: Cache, *, ttl_seconds: int = 600) -> None:
        self._inner = inner
        self._cache = cache
        self._ttl = ttl_seconds

    @staticmethod
    def cache_key(account_id: str, marketplace: str) -> str:
        return f"ad_spend_by_asin:{account_id}:{marketplace.upper()}"

    async def fetch_spend_by_asin(self, account_id: str, marketplace: str) -> Dict[str, Decimal]:
        key = self.cache_key(account_id, marketplace)
        try:
            cached = await self._cache.get(key)
        except Exception:
            logger.warning("Ad spend cache read failed for %s, recomputing", key, exc_info=True)
            cached = None
        if cached is not None:
            logger.debug("Ad spend cache hit for %s", key)
            return {asin: to_decimal(amount) for asin, amount in cached.items()}

        spend = await self._inner.fetch_spend_by_asin(account_id, marketplace)
        try:
            await self._cache.set(key, {asin: str(amount) for asin, amount in spend.items()}, self._ttl)
        except Exception:
            logger.warning("Ad spend cache write failed for %s", key, exc_info=True)
        return spend

    async def invalidate(self, account_id: str, marketplace: str) -> None:
        """写入新的原始广告数据后调用，删除失败时向上抛出以免继续提供过期数据。"""
        key = self.cache_key(account_id, marketplace)
        await self._cache.delete(key)
        logger.info("Invalidated ad spend cache %s", key)
