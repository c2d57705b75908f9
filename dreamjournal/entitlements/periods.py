"""Calendar keys and local-time helpers for reset windows.

Daily and monthly gates are evaluated in the user's timezone (UTC when unset
or unknown); the monthly interpretation counter resets on UTC months.
"""

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

logger = structlog.get_logger(__name__)


def resolve_zone(tz: str | None) -> ZoneInfo:
    """Return the ZoneInfo for tz, falling back to UTC for empty or unknown names."""
    if not tz:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_timezone_fallback_utc", timezone=tz)
        return ZoneInfo("UTC")


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by some drivers) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def local_now(tz: str | None, now: datetime | None = None) -> datetime:
    now = as_utc(now) if now is not None else utcnow()
    return now.astimezone(resolve_zone(tz))


def day_key(now: datetime, tz: str | None) -> str:
    """YYYY-MM-DD of `now` in tz."""
    return local_now(tz, now).strftime("%Y-%m-%d")


def month_key(now: datetime, tz: str | None) -> str:
    """YYYY-MM of `now` in tz."""
    return local_now(tz, now).strftime("%Y-%m")


def utc_month_key(now: datetime) -> str:
    return as_utc(now).strftime("%Y-%m")


def is_same_utc_month(a: datetime, b: datetime) -> bool:
    return utc_month_key(a) == utc_month_key(b)


def days_between_local(earlier: datetime, later: datetime, tz: str | None) -> int:
    """Whole days elapsed between two instants, measured on the local wall clock."""
    zone = resolve_zone(tz)
    a = as_utc(earlier).astimezone(zone).replace(tzinfo=None)
    b = as_utc(later).astimezone(zone).replace(tzinfo=None)
    return int((b - a).total_seconds() // 86_400)


def next_month_start(now: datetime, tz: str | None) -> date:
    """First day of the next calendar month in tz."""
    local = local_now(tz, now)
    if local.month == 12:
        return date(local.year + 1, 1, 1)
    return date(local.year, local.month + 1, 1)


def local_week_bounds(now: datetime, tz: str | None) -> tuple[datetime, datetime]:
    """UTC bounds of the 7 local days ending today (today and 6 days back)."""
    zone = resolve_zone(tz)
    today = local_now(tz, now).date()
    start_local = datetime.combine(today - timedelta(days=6), time.min, tzinfo=zone)
    end_local = datetime.combine(today, time.max, tzinfo=zone)
    return start_local.astimezone(UTC), end_local.astimezone(UTC)


def parse_hhmm(value: str | None) -> tuple[int, int] | None:
    """Parse "HH:MM" into (hour, minute); None when malformed."""
    if not value:
        return None
    parts = value.split(":")
    if len(parts) != 2:
        return None
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hour < 24 and 0 <= minute < 60):
        return None
    return hour, minute
