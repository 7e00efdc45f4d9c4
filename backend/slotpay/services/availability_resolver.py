# backend/slotpay/services/availability_resolver.py
"""
Availability Resolver for SlotPay

Turns a provider's weekly schedule plus date exceptions into concrete UTC
free intervals, minus everything already occupied by pending (with a live
hold) or confirmed bookings. The result is a hint only; the slot is claimed
for real by OrderIssuer.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ..core.exceptions import NotFoundException, ValidationException
from ..core.timezone_utils import (
    ensure_utc,
    local_minutes_to_utc,
    local_today,
    minutes_since_midnight,
    provider_timezone,
    sunday_first_weekday,
    utc_now,
)
from ..models.provider import Provider
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)

MAX_RANGE_DAYS = 90

Interval = Tuple[datetime, datetime]


@dataclass(frozen=True)
class FreeInterval:
    """Half-open [start_at, end_at) in UTC."""

    start_at: datetime
    end_at: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end_at - self.start_at).total_seconds() // 60)

    def local_bounds(self, utc_offset_minutes: int) -> Tuple[datetime, datetime]:
        tz = provider_timezone(utc_offset_minutes)
        return self.start_at.astimezone(tz), self.end_at.astimezone(tz)


@dataclass
class Availability:
    provider_id: str
    utc_offset_minutes: int
    duration_minutes: int
    intervals: List[FreeInterval]

    @property
    def start_times(self) -> List[datetime]:
        return start_times_within(self.intervals, timedelta(minutes=self.duration_minutes))


def _exception_for(provider: Provider, day: date) -> Optional[Dict[str, Any]]:
    for entry in provider.schedule_exceptions or []:
        if entry.get("date") == day.isoformat():
            return entry
    return None


def _slot_minutes(slots: Iterable[Dict[str, Any]], provider_id: str, day: date) -> List[Tuple[int, int]]:
    windows: List[Tuple[int, int]] = []
    for slot in slots:
        if slot.get("is_active") is False:
            continue
        try:
            start = minutes_since_midnight(str(slot["start"]))
            end = minutes_since_midnight(str(slot["end"]))
        except (KeyError, ValueError):
            logger.warning(
                "Skipping malformed schedule slot",
                extra={"provider_id": provider_id, "date": day.isoformat(), "slot": slot},
            )
            continue
        if end <= start:
            logger.warning(
                "Skipping schedule slot that ends before it starts",
                extra={"provider_id": provider_id, "date": day.isoformat(), "slot": slot},
            )
            continue
        windows.append((start, end))
    return windows


def schedule_windows_for_date(provider: Provider, day: date) -> List[Interval]:
    """
    UTC windows the provider publishes for one local date.

    A date exception wins over the weekly rule: ``is_available: false`` blanks
    the day, otherwise its own slots replace the recurring ones.
    """
    override = _exception_for(provider, day)
    if override is not None:
        if not override.get("is_available", False):
            return []
        slots = override.get("slots") or []
    else:
        weekday = sunday_first_weekday(day)
        slots = []
        for rule in provider.recurring_schedule or []:
            if rule.get("day_of_week") == weekday:
                slots.extend(rule.get("slots") or [])

    offset = provider.utc_offset_minutes
    return [
        (local_minutes_to_utc(day, start, offset), local_minutes_to_utc(day, end, offset))
        for start, end in _slot_minutes(slots, provider.id, day)
    ]


def merge_intervals(intervals: Iterable[Interval]) -> List[Interval]:
    """Sort and coalesce overlapping or touching intervals."""
    merged: List[Interval] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
            continue
        merged.append((start, end))
    return merged


def subtract_intervals(free: Sequence[Interval], busy: Sequence[Interval]) -> List[Interval]:
    """Remove every busy interval from the (merged, sorted) free intervals."""
    busy_merged = merge_intervals(busy)
    result: List[Interval] = []
    for start, end in free:
        cursor = start
        for busy_start, busy_end in busy_merged:
            if busy_end <= cursor or busy_start >= end:
                continue
            if busy_start > cursor:
                result.append((cursor, busy_start))
            cursor = max(cursor, busy_end)
            if cursor >= end:
                break
        if cursor < end:
            result.append((cursor, end))
    return result


def clip_intervals(intervals: Iterable[Interval], lower: datetime, upper: datetime) -> List[Interval]:
    clipped: List[Interval] = []
    for start, end in intervals:
        start, end = max(start, lower), min(end, upper)
        if end > start:
            clipped.append((start, end))
    return clipped


def fits_schedule(provider: Provider, start_at: datetime, end_at: datetime) -> bool:
    """True when [start_at, end_at) lies inside one published window."""
    start_at, end_at = ensure_utc(start_at), ensure_utc(end_at)
    tz = provider_timezone(provider.utc_offset_minutes)
    first_day = start_at.astimezone(tz).date()
    last_day = end_at.astimezone(tz).date()
    windows: List[Interval] = []
    day = first_day
    while day <= last_day:
        windows.extend(schedule_windows_for_date(provider, day))
        day += timedelta(days=1)
    return any(ws <= start_at and end_at <= we for ws, we in merge_intervals(windows))


def booking_horizon(provider: Provider, now: datetime) -> Tuple[datetime, datetime]:
    """Earliest and latest instants a booking may occupy, from notice and advance window."""
    now = ensure_utc(now)
    earliest = now + timedelta(hours=provider.min_notice_hours or 0)
    today = local_today(provider.utc_offset_minutes, now)
    last_day = today + timedelta(days=provider.advance_booking_days)
    latest = local_minutes_to_utc(last_day + timedelta(days=1), 0, provider.utc_offset_minutes)
    return earliest, latest


def validate_interval(provider: Provider, start_at: datetime, end_at: datetime, now: datetime) -> None:
    """Raise ValidationException unless [start_at, end_at) is bookable at ``now``."""
    details = {"start_at": start_at.isoformat(), "end_at": end_at.isoformat()}
    if start_at <= now:
        raise ValidationException("Requested start is in the past", code="START_IN_PAST", details=details)
    earliest, latest = booking_horizon(provider, now)
    if start_at < earliest:
        raise ValidationException(
            f"Bookings need at least {provider.min_notice_hours} hours notice",
            code="INSUFFICIENT_NOTICE",
            details=details,
        )
    if end_at > latest:
        raise ValidationException(
            f"Bookings can be made at most {provider.advance_booking_days} days ahead",
            code="BEYOND_BOOKING_WINDOW",
            details=details,
        )
    if not fits_schedule(provider, start_at, end_at):
        raise ValidationException(
            "Requested time is outside the provider's schedule",
            code="OUTSIDE_SCHEDULE",
            details=details,
        )


class AvailabilityResolver(BaseService):
    """Read-only calculation of bookable time; never takes locks."""

    def __init__(self, db: Session, *, now_fn: Callable[[], datetime] = utc_now):
        super().__init__(db)
        self._now_fn = now_fn
        self.provider_repository = RepositoryFactory.create_provider_repository(db)
        self.service_repository = RepositoryFactory.create_service_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)

    def _resolve_duration(
        self, provider: Provider, service_id: Optional[str], duration_minutes: Optional[int]
    ) -> int:
        if service_id:
            service = self.service_repository.get_by_id(service_id)
            if service is None or service.provider_id != provider.id or not service.is_active:
                raise NotFoundException("Service not found for this provider", code="SERVICE_NOT_FOUND")
            return int(service.duration_minutes)
        if duration_minutes is None:
            raise ValidationException("Either a service or a duration is required")
        if duration_minutes <= 0:
            raise ValidationException("Duration must be positive", details={"duration_minutes": duration_minutes})
        return int(duration_minutes)

    @BaseService.measure_operation("resolve_availability")
    def resolve_availability(
        self,
        provider_id: str,
        start_date: date,
        end_date: date,
        *,
        service_id: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Availability:
        """
        Free intervals for the provider between two local dates (inclusive).

        Every returned interval is at least ``duration`` long and does not
        touch any blocking booking widened by the provider's buffer.
        """
        if end_date < start_date:
            raise ValidationException("end_date must not be before start_date")
        if (end_date - start_date).days >= MAX_RANGE_DAYS:
            raise ValidationException(
                f"Date range may span at most {MAX_RANGE_DAYS} days",
                details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )

        provider = self.provider_repository.get_active(provider_id)
        if provider is None:
            raise NotFoundException("Provider not found", code="PROVIDER_NOT_FOUND")
        duration = self._resolve_duration(provider, service_id, duration_minutes)
        current = ensure_utc(now) if now is not None else ensure_utc(self._now_fn())
        result = Availability(
            provider_id=provider.id,
            utc_offset_minutes=provider.utc_offset_minutes,
            duration_minutes=duration,
            intervals=[],
        )

        windows: List[Interval] = []
        day = start_date
        while day <= end_date:
            windows.extend(schedule_windows_for_date(provider, day))
            day += timedelta(days=1)
        free = merge_intervals(windows)
        if not free:
            return result

        buffer = timedelta(minutes=provider.buffer_minutes or 0)
        window_start, window_end = free[0][0], free[-1][1]
        blocking = self.booking_repository.list_blocking_in_window(
            provider.id, window_start - buffer, window_end + buffer, current
        )
        busy = [
            (ensure_utc(booking.start_at) - buffer, ensure_utc(booking.end_at) + buffer)
            for booking in blocking
        ]
        free = subtract_intervals(free, busy)

        earliest, latest = booking_horizon(provider, current)
        free = clip_intervals(free, earliest, latest)

        minimum = timedelta(minutes=duration)
        result.intervals.extend(
            FreeInterval(start, end) for start, end in free if end - start >= minimum
        )
        self.logger.debug(
            "Resolved availability",
            extra={
                "provider_id": provider.id,
                "intervals": len(result.intervals),
                "blocking_bookings": len(blocking),
            },
        )
        return result

    def resolve(self, provider_id: str, start_date: date, end_date: date, **kwargs: Any) -> List[FreeInterval]:
        return self.resolve_availability(provider_id, start_date, end_date, **kwargs).intervals

    def resolve_start_times(
        self, provider_id: str, start_date: date, end_date: date, **kwargs: Any
    ) -> List[datetime]:
        """Candidate starts inside each free interval, one duration apart."""
        return self.resolve_availability(provider_id, start_date, end_date, **kwargs).start_times


def start_times_within(intervals: Iterable[FreeInterval], duration: timedelta) -> List[datetime]:
    starts: List[datetime] = []
    for interval in intervals:
        cursor = interval.start_at
        while cursor + duration <= interval.end_at:
            starts.append(cursor)
            cursor += duration
    return starts
