"""商品目录提供方：静态映射与 Amazon PAAPI 查询。"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Sequence

from amazon_paapi import AmazonApi
from amazon_paapi.errors import ItemsNotFound

from .base import CatalogProduct, CredentialProvider, ProductCatalogProvider

logger = logging.getLogger(__name__)

MAX_ITEMS_PER_REQUEST = 10
PAAPI_RESOURCES: List[str] = ["ItemInfo.Title", "ItemInfo.ExternalIds", "Offers.Listings.Availability.Message"]


class StaticCatalogProvider(ProductCatalogProvider):
    """内存中的目录映射，适用于测试与离线演示。"""

    def __init__(self, products: Iterable[CatalogProduct] = ()) -> None:
        self._products: Dict[str, CatalogProduct] = {product.asin: product for product in products}

    async def fetch_products(
        self, account_id: str, marketplace: str, asins: Sequence[str]
    ) -> Dict[str, CatalogProduct]:
        return {asin: self._products[asin] for asin in asins if asin in self._products}


def _extract_title(item: object) -> Optional[str]:
    item_info = getattr(item, "item_info", None)
    title = getattr(item_info, "title", None) if item_info else None
    return getattr(title, "display_value", None) if title else None


def _extract_status(item: object) -> Optional[str]:
    offers = getattr(item, "offers", None)
    listings = getattr(offers, "listings", None) if offers else None
    if not listings:
        return None
    availability = getattr(listings[0], "availability", None)
    return getattr(availability, "message", None) if availability else None


class PaapiCatalogProvider(ProductCatalogProvider):
    """
    通过 Amazon Product Advertising API 补充商品名称与可售状态。

    PAAPI 不提供卖家 SKU，sku 字段保持为空；每次请求最多 10 个 ASIN。
    """

    def __init__(self, credentials: CredentialProvider, *, client: Optional[AmazonApi] = None) -> None:
        self._client = client or AmazonApi(
            credentials.access_key,
            credentials.secret_key,
            credentials.associate_tag or "",
            credentials.marketplace,
        )

    def _get_items(self, asins: List[str]) -> List[object]:
        try:
            return list(self._client.get_items(asins, resources=PAAPI_RESOURCES))
        except ItemsNotFound:
            logger.info("PAAPI returned no items for %s", asins)
            return []

    async def fetch_products(
        self, account_id: str, marketplace: str, asins: Sequence[str]
    ) -> Dict[str, CatalogProduct]:
        unique = list(dict.fromkeys(asins))
        chunks = [unique[offset : offset + MAX_ITEMS_PER_REQUEST] for offset in range(0, len(unique), MAX_ITEMS_PER_REQUEST)]
        results = await asyncio.gather(*(asyncio.to_thread(self._get_items, chunk) for chunk in chunks))
        products: Dict[str, CatalogProduct] = {}
        for items in results:
            for item in items:
                asin = getattr(item, "asin", None)
                if not asin:
                    continue
                products[asin] = CatalogProduct(
                    asin=asin,
                    display_name=_extract_title(item),
                    status=_extract_status(item),
                )
        logger.debug("Resolved %s/%s catalog items via PAAPI", len(products), len(unique))
        return products

