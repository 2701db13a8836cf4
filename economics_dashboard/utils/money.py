"""金额换算辅助函数，统一使用 Decimal 避免浮点累加误差。"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value: object) -> Decimal:
    """
    功能说明:
        将任意上游数值转换为 Decimal，缺失或无法解析时返回 0。
    参数:
        value (object): 数字、数字字符串或 None。
    返回:
        Decimal: 转换结果，永不返回 NaN/Infinity。
    """
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            # float 先转为 str，避免二进制尾差进入 Decimal。
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return ZERO
    if not result.is_finite():
        return ZERO
    return result


def to_int(value: object) -> int:
    return int(to_decimal(value))


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_non_negative(value: Decimal) -> Decimal:
    return value if value > ZERO else ZERO


def margin_percent(net: Decimal, sales: Decimal) -> Decimal:
    """利润率（百分比），销售额为 0 时返回 0。"""
    if sales == ZERO:
        return ZERO
    return quantize(net / sales * HUNDRED)


def as_float(value: Decimal) -> float:
    return float(quantize(value))
