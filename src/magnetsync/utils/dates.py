"""时间工具."""

import calendar
import time
from datetime import UTC, datetime


def utcnow() -> datetime:
    """当前 UTC 时间（naive，与 SQLite 存储保持一致）."""
    return datetime.now(UTC).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """把带时区的时间统一转换为 naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def struct_time_to_datetime(value: time.struct_time | None) -> datetime | None:
    """feedparser 解析出的 UTC struct_time 转 datetime."""
    if not value:
        return None
    try:
        timestamp = calendar.timegm(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC).replace(tzinfo=None)
