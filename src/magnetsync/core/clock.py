"""订阅刷新时钟."""

from datetime import datetime

from magnetsync.models.subscription import RefreshUnit
from magnetsync.utils.dates import as_naive_utc, utcnow


def interval_in_minutes(interval: int, unit: str) -> int:
    """把刷新间隔统一换算为分钟."""
    if unit == RefreshUnit.HOURS:
        return interval * 60
    return interval


def should_refresh(
    last_refresh: datetime | None,
    interval: int,
    unit: str,
    *,
    forced: bool = False,
    now: datetime | None = None,
) -> bool:
    """
    判断订阅是否到了刷新时间.

    Args:
        last_refresh: 上次成功刷新时间，None 表示从未刷新
        interval: 刷新间隔
        unit: minutes | hours
        forced: 手动刷新时跳过时间检查
        now: 当前时间，默认取 UTC 当前时间

    Returns:
        True 表示需要刷新
    """
    if forced or last_refresh is None:
        return True

    current = as_naive_utc(now) if now else utcnow()
    elapsed_minutes = (current - as_naive_utc(last_refresh)).total_seconds() / 60
    return elapsed_minutes >= interval_in_minutes(interval, unit)
