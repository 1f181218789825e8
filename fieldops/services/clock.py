from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fieldops.settings import get_settings

_FALLBACK_TZ = "Asia/Kolkata"


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or _FALLBACK_TZ
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(_FALLBACK_TZ)


def to_local(ts_utc: datetime) -> datetime:
    return normalize_ts(ts_utc).astimezone(attendance_timezone())


def local_day_of(ts_utc: datetime) -> date:
    return to_local(ts_utc).date()


def local_day_bounds_utc(local_day: date) -> tuple[datetime, datetime]:
    tz = attendance_timezone()
    local_start = datetime.combine(local_day, time.min, tzinfo=tz)
    local_end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=tz)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def local_time_on(local_day: date, hour: int) -> datetime:
    """UTC instant of ``hour``:00 local time on ``local_day``."""
    tz = attendance_timezone()
    return datetime.combine(local_day, time(hour=hour), tzinfo=tz).astimezone(timezone.utc)


def workday_end_utc(local_day: date) -> datetime:
    return local_time_on(local_day, get_settings().workday_end_hour)


def is_before_workday_end(ts_utc: datetime) -> bool:
    return to_local(ts_utc).hour < get_settings().workday_end_hour


def rounded_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants, rounded half up."""
    seconds = (normalize_ts(end) - normalize_ts(start)).total_seconds()
    return int(math.floor(seconds / 60 + 0.5))


def floor_minutes(start: datetime | None, end: datetime) -> int:
    if start is None:
        return 0
    seconds = (normalize_ts(end) - normalize_ts(start)).total_seconds()
    return max(0, int(seconds // 60))


def hours_between(start: datetime, end: datetime) -> float:
    seconds = (normalize_ts(end) - normalize_ts(start)).total_seconds()
    return round(seconds / 3600, 2)
