"""时间工具.

数据库中统一保存不带时区的 UTC 时间.
"""

import calendar
import time
from datetime import UTC, datetime

from dateutil import parser as date_parser


def utc_now() -> datetime:
    """当前 UTC 时间（naive）."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """转换为 naive UTC 时间."""
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.replace(tzinfo=None)


def from_struct_time(value: time.struct_time | None) -> datetime | None:
    """feedparser 的 *_parsed 字段均为 UTC struct_time."""
    if not value:
        return None
    try:
        return datetime.fromtimestamp(calendar.timegm(value), UTC).replace(
            tzinfo=None
        )
    except (ValueError, OverflowError):
        return None


def parse_datetime(value: str | None) -> datetime | None:
    """解析任意格式的时间字符串，失败返回 None."""
    if not value:
        return None
    try:
        return to_naive_utc(date_parser.parse(value))
    except (ValueError, OverflowError):
        return None
