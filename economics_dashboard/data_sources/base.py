"""定义经济数据行记录模型以及外部协作方（原始数据、广告花费、商品目录）的抽象接口。"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Sequence

from ..utils.money import ZERO


@dataclass(frozen=True)
class Money:
    """金额与币种的组合，币种为空字符串表示上游未提供。"""

    amount: Decimal = ZERO
    currency_code: str = ""


@dataclass
class FeeEntry:
    """
    单个费用项。

    属性:
        fee_type_name (str): 上游提供的费用类型名称，大小写与分隔符不统一。
        charges (List[Decimal]): 该费用类型下的所有扣费金额，负数为返还/抵扣。
    """

    fee_type_name: str
    charges: List[Decimal] = field(default_factory=list)


@dataclass
class EconomicsRecord:
    """
    表示某个 ASIN 在单日（或单个区间）的经济数据行。

    属性:
        day (Optional[date]): 数据所属日期，取 startDate，缺失时取 endDate。
        marketplace_id (str): 站点 ID。
        parent_asin (Optional[str]): 父体 ASIN。
        child_asin (Optional[str]): 子体 ASIN。
        ordered_sales (Money): 下单销售额及币种。
        net_sales (Decimal): 扣除退款后的净销售额。
        units_ordered (int): 下单件数。
        units_refunded (int): 退款件数。
        net_units_sold (int): 净销量。
        fees (List[FeeEntry]): 费用明细。
        ad_charges (List[Decimal]): 广告扣费明细。
        net_proceeds (Decimal): 上游给出的净收益，作为权威毛利。
        net_proceeds_currency (str): 净收益币种。
    """

    day: Optional[date] = None
    marketplace_id: str = ""
    parent_asin: Optional[str] = None
    child_asin: Optional[str] = None
    ordered_sales: Money = field(default_factory=Money)
    net_sales: Decimal = ZERO
    units_ordered: int = 0
    units_refunded: int = 0
    net_units_sold: int = 0
    fees: List[FeeEntry] = field(default_factory=list)
    ad_charges: List[Decimal] = field(default_factory=list)
    net_proceeds: Decimal = ZERO
    net_proceeds_currency: str = ""

    @property
    def product_id(self) -> Optional[str]:
        """商品主键：优先子体，其次父体，都缺失时返回 None。"""
        return self.child_asin or self.parent_asin or None


@dataclass
class CatalogProduct:
    """商品目录中的一条商品信息。"""

    asin: str
    sku: Optional[str] = None
    display_name: Optional[str] = None
    status: Optional[str] = None


class EconomicsFeedSource(ABC):
    """
    抽象基类，描述如何获取一批换行分隔的经济数据 JSON 文本。

    上游查询/轮询协议不在本项目范围内，子类只需返回已完成的批次文档。
    """

    name: str

    @abstractmethod
    async def fetch_batch(self, region: str, marketplace: str, start: date, end: date) -> str:
        """
        功能说明:
            获取指定区域、站点与日期范围（闭区间）的原始批次文本。
        参数:
            region (str): 区域代码。
            marketplace (str): 站点代码。
            start (date): 起始日期。
            end (date): 结束日期。
        返回:
            str: JSONL 文本，每行一个 JSON 对象。
        """


class AdSpendProvider(ABC):
    """按 ASIN 汇总的广告花费提供方。"""

    @abstractmethod
    async def fetch_spend_by_asin(self, account_id: str, marketplace: str) -> Dict[str, Decimal]:
        """返回 `{asin: 花费}` 映射。"""


class ProductCatalogProvider(ABC):
    """商品目录提供方，返回 SKU、名称与状态。"""

    @abstractmethod
    async def fetch_products(
        self,
        account_id: str,
        marketplace: str,
        asins: Sequence[str],
    ) -> Dict[str, CatalogProduct]:
        """返回给定 ASIN 中能查到的商品信息，查不到的直接缺省。"""


class CredentialProvider(Protocol):
    """
    定义 PAAPI 目录查询期望的凭证字段集合。

    属性:
        access_key (str): 访问密钥。
        secret_key (str): 密钥，用于签名。
        associate_tag (Optional[str]): 关联标签，可为空。
        marketplace (str): 市场代码，如 US/JP。
    """

    access_key: str
    secret_key: str
    associate_tag: str | None
    marketplace: str
