"""
Timestamp utilities for consistent time handling across the system.

All persisted timestamps are timezone-aware UTC datetimes; documents carry
them as ISO-8601 strings.
"""

from datetime import datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage.

    Args:
        value: Datetime to serialize; naive values are assumed to be UTC

    Returns:
        ISO-8601 string, or None when value is None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO-8601 timestamp back into an aware datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_clock(value: str) -> time:
    """Parse an ``HH:MM`` wall-clock string.

    Raises:
        ValueError: If the string is not a valid 24-hour clock time
    """
    if not isinstance(value, str):
        raise ValueError(f'Clock time must be a string, got {value!r}')
    hours, _, minutes = value.strip().partition(':')
    return time(hour=int(hours), minute=int(minutes or 0))


def load_timezone(tz_name: str) -> ZoneInfo:
    """Resolve an IANA timezone name.

    Raises:
        ValueError: If the name is not a known timezone
    """
    if not isinstance(tz_name, str) or not tz_name.strip():
        raise ValueError(f'Timezone must be a non-empty string, got {tz_name!r}')
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, OSError, ValueError) as e:
        raise ValueError(f'Unknown timezone: {tz_name!r}') from e


def in_time_window(moment: datetime, start: str, end: str, tz_name: str) -> bool:
    """Check whether a moment falls inside a daily wall-clock window.

    The window is evaluated in the given IANA timezone. A window whose start is
    later than its end wraps past midnight (22:00-08:00 covers 23:30 and 07:59).

    Args:
        moment: Aware datetime to test
        start: Window start as ``HH:MM`` (inclusive)
        end: Window end as ``HH:MM`` (exclusive)
        tz_name: IANA timezone name, e.g. ``America/Los_Angeles``

    Returns:
        True if the local wall-clock time is inside the window

    Raises:
        ValueError: If the timezone or either clock time is invalid
    """
    local = moment.astimezone(load_timezone(tz_name)).time().replace(second=0, microsecond=0)
    window_start = parse_clock(start)
    window_end = parse_clock(end)

    if window_start == window_end:
        return False
    if window_start < window_end:
        return window_start <= local < window_end
    return local >= window_start or local < window_end
