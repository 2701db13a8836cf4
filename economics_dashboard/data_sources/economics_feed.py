"""经济数据批次来源：本地 JSONL 文件与可复现的模拟数据。"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Dict, List

from ..config import MARKETPLACE_IDS
from ..utils.dates import iter_days
from .base import EconomicsFeedSource

logger = logging.getLogger(__name__)


class FileEconomicsFeedSource(EconomicsFeedSource):
    """
    从本地 JSONL 文件读取已下载的 Data Kiosk 批次。

    文件路径可以是单个文件，也可以是按 `<region>_<marketplace>.jsonl` 命名的目录。
    """

    def __init__(self, path: Path | str) -> None:
        self.name = "file_economics_feed"
        self._path = Path(path)

    def _resolve(self, region: str, marketplace: str) -> Path:
        if self._path.is_dir():
            return self._path / f"{region.upper()}_{marketplace.upper()}.jsonl"
        return self._path

    async def fetch_batch(self, region: str, marketplace: str, start: date, end: date) -> str:
        path = self._resolve(region, marketplace)
        logger.info("Reading economics batch from %s (%s ~ %s)", path, start, end)
        # 文件不存在时 FileNotFoundError 原样抛出，由流水线决定是否回退。
        return await asyncio.to_thread(path.read_text, encoding="utf-8")


@dataclass
class MockFeedSettings:
    """
    控制模拟数据源行为的配置项。

    属性:
        seed (int): 伪随机种子，确保数据可复现。
        parents (int): 父体数量。
        children_per_parent (int): 每个父体下的子体数量。
    """

    seed: int = 2024
    parents: int = 3
    children_per_parent: int = 2


class MockEconomicsFeedSource(EconomicsFeedSource):
    """
    基于线性同余发生器的可复现模拟数据源。

    每个子体每天生成一条经济数据行，结构与 Data Kiosk `economics` 查询结果一致。
    """

    FEE_TYPES = ("FBAPerUnitFulfillmentFee", "ReferralFee", "FBAStorageFee")

    def __init__(self, settings: MockFeedSettings | None = None) -> None:
        self.name = "mock_economics_feed"
        self._settings = settings or MockFeedSettings()

    def _catalog(self) -> List[Dict[str, str]]:
        items = []
        for parent_index in range(1, self._settings.parents + 1):
            parent = f"B0PARENT{parent_index:03d}"
            for child_index in range(1, self._settings.children_per_parent + 1):
                items.append({"parent": parent, "child": f"B0CHILD{parent_index:03d}{child_index:02d}"})
        return items

    def build_lines(self, marketplace: str, start: date, end: date) -> List[str]:
        """
        功能说明:
            生成指定日期范围内的模拟 JSONL 行。
        参数:
            marketplace (str): 站点代码。
            start (date): 起始日期。
            end (date): 结束日期。
        返回:
            List[str]: 每行一个 JSON 文本。
        """
        rng = _PseudoRandom(self._settings.seed)
        marketplace_id = MARKETPLACE_IDS.get(marketplace.upper(), "")
        timeline = list(iter_days(start, end))
        lines: List[str] = []
        for item in self._catalog():
            base_units = max(1, rng.randint(2, 20))
            unit_price = round(rng.uniform(12, 60), 2)
            for day in timeline:
                # 使用基础值叠加随机波动来模拟真实销量。
                units = max(0, int(base_units * rng.uniform(0.5, 1.4)))
                ordered = round(units * unit_price, 2)
                refunded = min(units, rng.randint(0, 2))
                net_sales = round(ordered - refunded * unit_price, 2)
                fees = [
                    {
                        "feeTypeName": fee_type,
                        "charges": [
                            {"aggregatedDetail": {"totalAmount": {"amount": round(ordered * share, 2), "currencyCode": "USD"}}}
                        ],
                    }
                    for fee_type, share in zip(self.FEE_TYPES, (rng.uniform(0.1, 0.25), 0.15, rng.uniform(0.0, 0.05)))
                ]
                ad_amount = round(ordered * rng.uniform(0.0, 0.35), 2)
                fee_total = sum(fee["charges"][0]["aggregatedDetail"]["totalAmount"]["amount"] for fee in fees)
                record = {
                    "startDate": day.isoformat(),
                    "endDate": day.isoformat(),
                    "marketplaceId": marketplace_id,
                    "parentAsin": item["parent"],
                    "childAsin": item["child"],
                    "sales": {
                        "orderedProductSales": {"amount": ordered, "currencyCode": "USD"},
                        "netProductSales": {"amount": net_sales, "currencyCode": "USD"},
                        "unitsOrdered": units,
                        "unitsRefunded": refunded,
                        "netUnitsSold": units - refunded,
                    },
                    "fees": fees,
                    "ads": [{"adTypeName": "SponsoredProducts", "charge": {"totalAmount": {"amount": ad_amount}}}],
                    "netProceeds": {
                        "total": {"amount": round(net_sales - fee_total - ad_amount, 2), "currencyCode": "USD"}
                    },
                }
                lines.append(json.dumps(record))
        return lines

    async def fetch_batch(self, region: str, marketplace: str, start: date, end: date) -> str:
        lines = self.build_lines(marketplace, start, end)
        logger.info("Generated %s mock economics lines for %s-%s", len(lines), region, marketplace)
        return "\n".join(lines)


class _PseudoRandom:
    """简单的线性同余伪随机数发生器，用于生成可复现的数据。"""

    def __init__(self, seed: int) -> None:
        self._state = seed % 2147483647 or 42

    def _next(self) -> float:
        self._state = (self._state * 48271) % 2147483647
        return self._state / 2147483647

    def uniform(self, low: float, high: float) -> float:
        return low + (high - low) * self._next()

    def randint(self, low: int, high: int) -> int:
        return int(low + (high - low) * self._next())
