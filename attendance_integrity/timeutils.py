from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger("attendance_integrity.time")

DEFAULT_TIMEZONE = "Europe/Paris"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return utcnow()

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


@lru_cache
def resolve_timezone(name: str | None) -> ZoneInfo:
    raw_name = (name or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_attendance_timezone", extra={"timezone": raw_name})
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_time_of(ts_utc: datetime, tz: ZoneInfo) -> time:
    return normalize_ts(ts_utc).astimezone(tz).time()


def month_bounds_utc(year: int, month: int, tz: ZoneInfo) -> tuple[datetime, datetime]:
    local_start = datetime.combine(date(year, month, 1), time.min, tzinfo=tz)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    local_end = datetime.combine(next_month, time.min, tzinfo=tz)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def minutes_between(start: datetime, end: datetime) -> int:
    delta: timedelta = normalize_ts(end) - normalize_ts(start)
    return max(0, int(delta.total_seconds() // 60))


def local_date_of(ts_utc: datetime, tz: ZoneInfo) -> date:
    return normalize_ts(ts_utc).astimezone(tz).date()


def day_bounds_utc(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    local_start = datetime.combine(day, time.min, tzinfo=tz)
    local_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)
