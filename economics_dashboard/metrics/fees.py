"""费用类型归类：将上游不统一的费用名称映射为标准类别。"""

from __future__ import annotations

import re
from enum import Enum
from functools import lru_cache
from typing import Tuple


class FeeCategory(str, Enum):
    FULFILLMENT = "fulfillment"
    STORAGE = "storage"
    REFERRAL = "referral"
    REFUND = "refund"
    REIMBURSEMENT = "reimbursement"
    DISPOSAL = "disposal"
    OTHER = "other"


# 顺序即优先级：FBA 前缀的仓储/弃置费以及各类返还必须先于配送类匹配。
# 别名均为归一化后的形式（小写、无下划线/连字符/空格）。
FEE_ALIASES: Tuple[Tuple[FeeCategory, Tuple[str, ...]], ...] = (
    (
        FeeCategory.REIMBURSEMENT,
        ("reimbursement", "reimbursed", "reversalreimbursement", "compensatedclawback", "safetreimbursement"),
    ),
    (
        FeeCategory.REFUND,
        (
            "refund",
            "refundadministration",
            "refundcommission",
            "returnprocessing",
            "highreturnrate",
            "return",
            "restocking",
        ),
    ),
    (
        FeeCategory.DISPOSAL,
        ("disposal", "removal", "liquidation", "destroy"),
    ),
    (
        FeeCategory.STORAGE,
        (
            "storage",
            "agedinventory",
            "longtermstorage",
            "storageutilization",
            "inventoryplacement",
            "lowinventorylevel",
        ),
    ),
    (
        FeeCategory.REFERRAL,
        ("referral", "closing", "variableclosing", "peritem", "commission", "sellingfee"),
    ),
    (
        FeeCategory.FULFILLMENT,
        ("fulfillment", "fulfilment", "fba", "pickpack", "weighthandling", "oversize", "inbound", "label", "prep"),
    ),
)

_SEPARATORS = re.compile(r"[\s_\-]+")


def normalize_fee_type(name: str | None) -> str:
    """小写并去掉下划线、连字符与空白。"""
    if not name:
        return ""
    return _SEPARATORS.sub("", name.lower())


@lru_cache(maxsize=1024)
def classify_fee(name: str | None) -> FeeCategory:
    """
    功能说明:
        按别名表的先后顺序，以完全相等或子串包含的方式归类费用名称。
        未识别或空名称归入 OTHER，绝不丢弃。
    参数:
        name (str | None): 上游费用类型名称，例如 "FbaFulfilmentFee" 或 "FBA_FULFILLMENT_FEES"。
    返回:
        FeeCategory: 标准类别。
    """
    normalized = normalize_fee_type(name)
    if not normalized:
        return FeeCategory.OTHER
    for category, aliases in FEE_ALIASES:
        for alias in aliases:
            if normalized == alias or alias in normalized:
                return category
    return FeeCategory.OTHER


def is_platform_fee(category: FeeCategory) -> bool:
    """返还类（reimbursement）是抵扣而非费用，不计入平台费用合计。"""
    return category is not FeeCategory.REIMBURSEMENT
