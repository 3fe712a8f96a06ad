"""
Time helpers shared by repositories and services.
All stored timestamps are ISO-8601 UTC strings with millisecond precision.
"""
from datetime import date, datetime, timedelta
from typing import Optional, Tuple

import pytz

from ..config import settings


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def to_iso(dt: datetime) -> str:
    """
    Format a datetime as ISO-8601 UTC ("2024-01-15T10:00:00.000Z").

    Args:
        dt: Datetime (naive values are treated as UTC)

    Returns:
        ISO string with millisecond precision
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=pytz.UTC)
    dt = dt.astimezone(pytz.UTC)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def now_iso() -> str:
    return to_iso(utc_now())


def parse_iso(value: str) -> datetime:
    """Parse an ISO timestamp; values without an offset are UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def is_valid_iso(value: object) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        parse_iso(value)
    except ValueError:
        try:
            datetime.strptime(value.strip(), "%H:%M:%S")
        except ValueError:
            try:
                datetime.strptime(value.strip(), "%H:%M")
            except ValueError:
                return False
    return True


def seconds_between(start_iso: str, end: Optional[datetime] = None) -> int:
    """
    Whole seconds elapsed from start_iso to end (default now). Never negative.
    """
    end = end or utc_now()
    if end.tzinfo is None:
        end = end.replace(tzinfo=pytz.UTC)
    return max(0, int((end - parse_iso(start_iso)).total_seconds()))


def local_day_bounds(day: date, timezone_str: Optional[str] = None) -> Tuple[str, str]:
    """
    UTC ISO bounds [start, end) of a calendar day in the given timezone.

    Args:
        day: Local calendar day
        timezone_str: Timezone name (defaults to TZ_DEFAULT)

    Returns:
        (start_iso, end_iso) in UTC
    """
    tz = pytz.timezone(timezone_str or settings.tz_default)
    start = tz.localize(datetime(day.year, day.month, day.day))
    end = tz.localize(datetime.combine(day + timedelta(days=1), datetime.min.time()))
    return to_iso(start), to_iso(end)


def rolling_window(
    past_days: Optional[int] = None,
    future_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Tuple[str, str]:
    """(start_iso, end_iso) of the sliding window used to scope work order sync."""
    if past_days is None:
        past_days = settings.work_order_window_past_days
    if future_days is None:
        future_days = settings.work_order_window_future_days
    now = now or utc_now()
    return to_iso(now - timedelta(days=past_days)), to_iso(now + timedelta(days=future_days))


def format_duration(seconds: int) -> str:
    """Human readable duration: 45s, 12m 05s, 2h 03m."""
    seconds = max(0, int(seconds or 0))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"
