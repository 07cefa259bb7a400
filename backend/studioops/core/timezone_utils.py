"""
Timezone utilities for studio-local scheduling.

Sessions are stored in UTC; opening hours and recurrence steps are expressed
in the studio's wall-clock time.
"""

from datetime import date, datetime, time
from typing import Any, Union

import pytz

DEFAULT_STUDIO_TIMEZONE = "UTC"


def get_timezone(tz: Union[str, Any, None]) -> Any:
    """Resolve a timezone name (or an existing tzinfo) to a pytz timezone."""
    if tz is None:
        return pytz.timezone(DEFAULT_STUDIO_TIMEZONE)
    if isinstance(tz, str):
        return pytz.timezone(tz)
    return tz


def get_studio_timezone(studio: Any) -> Any:
    """Return the studio's timezone, falling back to UTC."""
    return get_timezone(getattr(studio, "timezone", None) or DEFAULT_STUDIO_TIMEZONE)


def ensure_utc(dt: datetime) -> datetime:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be UTC.
    """
    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC)


def to_local(dt: datetime, tz: Any) -> datetime:
    """Convert a datetime to the given timezone's wall clock."""
    return ensure_utc(dt).astimezone(get_timezone(tz))


def localize_wall_clock(day: date, wall_time: time, tz: Any) -> datetime:
    """
    Build an aware UTC datetime from a local calendar date and wall-clock time.

    Nonexistent and ambiguous local times (DST transitions) resolve to the
    standard-time interpretation.
    """
    zone = get_timezone(tz)
    naive = datetime.combine(day, wall_time.replace(tzinfo=None))
    local = zone.normalize(zone.localize(naive, is_dst=False))
    return local.astimezone(pytz.UTC)
