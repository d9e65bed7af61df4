from __future__ import annotations

from datetime import datetime, time, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

VENUE_TIMEZONE = "America/New_York"


@lru_cache(maxsize=None)
def zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(f"Unknown timezone {name!r}; install the tzdata package") from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_timezone(dt: datetime, timezone_name: str) -> datetime:
    """Convert to ``timezone_name``; naive values are read as UTC."""
    aware = dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)
    return aware.astimezone(zone(timezone_name))


def is_trading_weekday(dt: datetime, timezone_name: str = VENUE_TIMEZONE) -> bool:
    return to_timezone(dt, timezone_name).weekday() < 5


def minutes_since_midnight(dt: datetime, timezone_name: str) -> int:
    local = to_timezone(dt, timezone_name)
    return local.hour * 60 + local.minute


def parse_hhmm(value: str) -> time:
    hour, minute = value.strip().split(":")
    return time(int(hour), int(minute))


def is_shutdown_time(now: datetime, shutdown_time: str | None, timezone_name: str) -> bool:
    """True from ``shutdown_time`` until the end of that hour in ``timezone_name``."""
    if not shutdown_time:
        return False
    target = parse_hhmm(shutdown_time)
    local = to_timezone(now, timezone_name)
    return local.hour == target.hour and local.minute >= target.minute
