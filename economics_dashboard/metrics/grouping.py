"""父子体分组的利润表行构建与分页。"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from ..data_sources.base import CatalogProduct
from ..storage.sharding import AsinStorage, ParentGroup, group_products
from ..utils.money import ZERO, margin_percent, quantize
from .rollups import AsinRollup

logger = logging.getLogger(__name__)


@dataclass
class ProductRow:
    """
    利润表中的一行（父体或子体）。

    属性:
        asin (str): 行对应的 ASIN；父体行为分组键。
        parent_asin (Optional[str]): 子体行的父体，父体行和独立商品为 None。
        sku / display_name (Optional[str]): 商品目录补充信息。
        sales (Decimal): 销售额。
        units_sold (int): 净销量。
        advertising_spend (Decimal): 广告花费。
        fees (Decimal): 平台费用。
        gross_profit (Decimal): 可归因利润 = 销售额 - 广告 - 平台费用。
        reported_profit (Decimal): 上游净收益之和。
        margin (Decimal): gross_profit / sales * 100，销售额为 0 时为 0。
        is_expandable (bool): 是否有子体行。
        children (List[ProductRow]): 子体行。
    """

    asin: str
    parent_asin: Optional[str] = None
    sku: Optional[str] = None
    display_name: Optional[str] = None
    sales: Decimal = ZERO
    units_sold: int = 0
    advertising_spend: Decimal = ZERO
    fees: Decimal = ZERO
    gross_profit: Decimal = ZERO
    reported_profit: Decimal = ZERO
    margin: Decimal = ZERO
    is_expandable: bool = False
    children: List["ProductRow"] = field(default_factory=list)

    def asins(self) -> List[str]:
        return [self.asin] + [child.asin for child in self.children]


@dataclass
class Pagination:
    page: int
    limit: int
    total_items: int
    total_pages: int
    has_more: bool


@dataclass
class TablePage:
    rows: List[ProductRow]
    pagination: Pagination
    total_parents: int = 0
    total_children: int = 0


def ad_spend_for(product: AsinRollup, ad_spend: Optional[Mapping[str, Decimal]]) -> Decimal:
    """外部广告花费映射中有该 ASIN 时以映射为准，否则用汇总自带的广告扣费。"""
    if ad_spend and product.asin in ad_spend:
        return ad_spend[product.asin]
    return product.advertising_spend


def _finish(row: ProductRow) -> ProductRow:
    row.sales = quantize(row.sales)
    row.advertising_spend = quantize(row.advertising_spend)
    row.fees = quantize(row.fees)
    row.reported_profit = quantize(row.reported_profit)
    row.gross_profit = quantize(row.sales - row.advertising_spend - row.fees)
    row.margin = margin_percent(row.gross_profit, row.sales)
    return row


def build_product_row(
    product: AsinRollup,
    *,
    parent_asin: Optional[str] = None,
    ad_spend: Optional[Mapping[str, Decimal]] = None,
) -> ProductRow:
    """由单个商品级汇总构建一行。"""
    return _finish(
        ProductRow(
            asin=product.asin,
            parent_asin=parent_asin,
            sales=product.sales,
            units_sold=product.units_sold,
            advertising_spend=ad_spend_for(product, ad_spend),
            fees=product.platform_fees,
            reported_profit=product.gross_profit,
        )
    )


def build_group_row(group: ParentGroup, *, ad_spend: Optional[Mapping[str, Decimal]] = None) -> ProductRow:
    """
    功能说明:
        构建父体行：数值为组内所有成员之和，子体行不包含父体自身的记录。
    参数:
        group (ParentGroup): 父体分组。
        ad_spend (Optional[Mapping[str, Decimal]]): 外部广告花费映射。
    返回:
        ProductRow: 父体行。
    """
    row = ProductRow(asin=group.parent_asin)
    for member in group.members:
        row.sales += member.sales
        row.units_sold += member.units_sold
        row.advertising_spend += ad_spend_for(member, ad_spend)
        row.fees += member.platform_fees
        row.reported_profit += member.gross_profit
    row.children = [
        build_product_row(child, parent_asin=group.parent_asin, ad_spend=ad_spend) for child in group.children
    ]
    row.is_expandable = bool(row.children)
    return _finish(row)


def attach_catalog(rows: Iterable[ProductRow], catalog: Mapping[str, CatalogProduct]) -> None:
    """用商品目录信息补充行的 SKU 与名称，查不到的保持为空。"""
    for row in rows:
        product = catalog.get(row.asin)
        if product is not None:
            row.sku = product.sku
            row.display_name = product.display_name
        attach_catalog(row.children, catalog)


def validate_page(page: int, limit: int) -> None:
    if page < 1:
        raise ValueError(f"page must be >= 1, got {page}")
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")


def make_pagination(page: int, limit: int, total_items: int) -> Pagination:
    total_pages = math.ceil(total_items / limit) if total_items else 0
    return Pagination(
        page=page,
        limit=limit,
        total_items=total_items,
        total_pages=total_pages,
        has_more=page < total_pages,
    )


async def paginate_parent_groups(
    storage: AsinStorage,
    *,
    page: int = 1,
    limit: int = 10,
    ad_spend: Optional[Mapping[str, Decimal]] = None,
    catalog: Optional[Mapping[str, CatalogProduct]] = None,
) -> TablePage:
    """
    功能说明:
        返回按父体分组、按组销售额降序的第 page 页。分组与排序由存储策略完成，
        分片存储只会读取当前页父体下的子体。
    参数:
        storage (AsinStorage): `asin_storage_for` 返回的存储策略。
        page (int): 从 1 开始的页码。
        limit (int): 每页父体数量。
        ad_spend (Optional[Mapping[str, Decimal]]): 外部广告花费映射。
        catalog (Optional[Mapping[str, CatalogProduct]]): 已取得的商品目录信息。
    返回:
        TablePage: 行与分页信息。
    异常:
        ValueError: page 或 limit 小于 1。
    """
    validate_page(page, limit)
    total_parents, total_children = await storage.count_parent_groups()
    groups = await storage.parent_group_page((page - 1) * limit, limit)
    rows = [build_group_row(group, ad_spend=ad_spend) for group in groups]
    if catalog:
        attach_catalog(rows, catalog)
    logger.debug("Built table page %s with %s rows (%s parents total)", page, len(rows), total_parents)
    return TablePage(
        rows=rows,
        pagination=make_pagination(page, limit, total_parents),
        total_parents=total_parents,
        total_children=total_children,
    )


async def build_all_rows(
    storage: AsinStorage,
    *,
    ad_spend: Optional[Mapping[str, Decimal]] = None,
) -> List[ProductRow]:
    """构建全部父体行，供问题检测等需要完整视图的场景使用。"""
    products: Dict[str, AsinRollup] = await storage.product_totals()
    groups = await group_products(products, yield_every=storage.yield_every)
    return [build_group_row(group, ad_spend=ad_spend) for group in groups]
