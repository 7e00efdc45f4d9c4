"""
Timezone utilities for SlotPay.

Providers publish schedules in local wall-clock time at a fixed UTC offset
(no daylight-saving rules). Everything persisted is UTC.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import pytz


def provider_timezone(utc_offset_minutes: int) -> pytz.tzinfo.BaseTzInfo:
    """
    Return the fixed-offset zone for a provider.

    Args:
        utc_offset_minutes: Offset from UTC in minutes (e.g. 330 for +05:30)
    """
    return pytz.FixedOffset(utc_offset_minutes)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime to aware UTC.

    SQLite hands back naive values for timezone-aware columns; those are
    stored in UTC, so a naive value is read as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_to_utc(day: date, wall_clock: time, utc_offset_minutes: int) -> datetime:
    """Combine a local date and wall-clock time and convert to UTC."""
    local = provider_timezone(utc_offset_minutes).localize(datetime.combine(day, wall_clock))
    return local.astimezone(timezone.utc)


def local_today(utc_offset_minutes: int, now: Optional[datetime] = None) -> date:
    current = ensure_utc(now) if now is not None else utc_now()
    return current.astimezone(provider_timezone(utc_offset_minutes)).date()


def minutes_since_midnight(value: str) -> int:
    """Return the minute offset of an "HH:MM" string, allowing "24:00"."""
    hours, minutes = value.split(":")
    total = int(hours) * 60 + int(minutes)
    if total < 0 or total > 24 * 60 or int(minutes) >= 60:
        raise ValueError(f"Invalid wall-clock time: {value!r}")
    return total


def local_minutes_to_utc(day: date, minutes: int, utc_offset_minutes: int) -> datetime:
    """Convert "minutes after local midnight of day" to a UTC datetime."""
    midnight = local_to_utc(day, time(0, 0), utc_offset_minutes)
    return midnight + timedelta(minutes=minutes)


def sunday_first_weekday(day: date) -> int:
    """Day of week with 0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7
