"""Timezone resolution helpers with pragmatic fallbacks."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Common deployment fallback when IANA tzdata is unavailable (Windows hosts).
# Fixed offsets ignore DST; they are only a last resort.
_FIXED_FALLBACKS: dict[str, tzinfo] = {
    "UTC": timezone.utc,
    "Australia/Brisbane": timezone(timedelta(hours=10)),
    "Australia/Sydney": timezone(timedelta(hours=10)),
    "Australia/Melbourne": timezone(timedelta(hours=10)),
    "Australia/Adelaide": timezone(timedelta(hours=9, minutes=30)),
    "Australia/Perth": timezone(timedelta(hours=8)),
}


def resolve_timezone(tz_name: str) -> tzinfo:
    """Resolve an IANA timezone name with safe fallbacks.

    Order:
    1. IANA database via ZoneInfo.
    2. Known fixed-offset fallback map.
    3. Host local timezone.
    4. UTC.
    """
    try:
        return ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        pass

    if tz_name in _FIXED_FALLBACKS:
        return _FIXED_FALLBACKS[tz_name]

    local_tz = datetime.now().astimezone().tzinfo
    if local_tz is not None:
        return local_tz
    return timezone.utc


def ensure_utc(dt: datetime) -> datetime:
    """Normalise a datetime to aware UTC (naive values are assumed UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_hhmm(value: str) -> time:
    hour, minute = (int(p) for p in value.split(":"))
    return time(hour=hour, minute=minute)


def in_daily_window(now_local: datetime, start: str, end: str) -> bool:
    """Check whether a local wall-clock time falls in [start, end).

    Windows whose end is earlier than their start cross midnight.
    A window with start == end is empty.
    """
    current = now_local.hour * 60 + now_local.minute
    s = parse_hhmm(start)
    e = parse_hhmm(end)
    start_mins = s.hour * 60 + s.minute
    end_mins = e.hour * 60 + e.minute
    if start_mins <= end_mins:
        return start_mins <= current < end_mins
    return current >= start_mins or current < end_mins
