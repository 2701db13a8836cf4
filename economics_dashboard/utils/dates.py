"""封装日期计算的常用辅助函数。"""

from datetime import date, timedelta
from typing import Iterable, Optional

# 缺少日期的记录统一归入该键，保证日维度汇总与 ASIN 维度汇总口径一致。
UNDATED_KEY = "no_date"


def recent_period(days: int) -> tuple[date, date]:
    """
    功能说明:
        根据给定天数返回最近的起止日期（包含当天）。
    参数:
        days (int): 包含的天数，至少为 1。
    返回:
        tuple[date, date]: (start, end) 日期元组。
    """
    end = date.today()
    start = end - timedelta(days=max(days, 1) - 1)
    return start, end


def iter_days(start: date, end: date) -> Iterable[date]:
    """生成起止日期（闭区间）内的所有日期。"""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def parse_day(value: object) -> Optional[date]:
    """
    功能说明:
        将上游的日期字段（`YYYY-MM-DD` 或带时间的 ISO 字符串）解析为 `date`。
    参数:
        value (object): 原始字段值。
    返回:
        Optional[date]: 解析成功返回日期，否则返回 None。
    """
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def day_key(day: Optional[date]) -> str:
    return day.isoformat() if day else UNDATED_KEY
