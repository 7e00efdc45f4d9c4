"""
Unit tests for AvailabilityResolver and its interval helpers.

The provider fixture works Monday 09:00-17:00 and Tuesday 09:00-12:00 at
UTC+05:30; the frozen clock sits on the Sunday before.
"""

from datetime import datetime, timedelta, timezone

import pytest

from slotpay.core.exceptions import NotFoundException, ValidationException
from slotpay.core.timezone_utils import sunday_first_weekday
from slotpay.services.availability_resolver import (
    AvailabilityResolver,
    FreeInterval,
    fits_schedule,
    merge_intervals,
    start_times_within,
    subtract_intervals,
)
from tests.helpers import MONDAY, OTHER_CUSTOMER, TUESDAY, local_slot


def _utc(hour, minute=0):
    return datetime(2030, 1, 7, hour, minute, tzinfo=timezone.utc)


def _bounds(intervals):
    return [(interval.start_at, interval.end_at) for interval in intervals]


@pytest.fixture
def resolver(db, clock):
    return AvailabilityResolver(db, now_fn=clock)


class TestResolveAvailability:
    def test_open_day_is_one_interval(self, resolver, provider, service):
        availability = resolver.resolve_availability(provider.id, MONDAY, MONDAY, service_id=service.id)

        assert _bounds(availability.intervals) == [(local_slot(9), local_slot(17))]
        assert availability.duration_minutes == 60
        assert availability.utc_offset_minutes == 330

    def test_start_times_step_by_service_duration(self, resolver, provider, service):
        starts = resolver.resolve_start_times(provider.id, MONDAY, MONDAY, service_id=service.id)

        assert len(starts) == 8
        assert starts[0] == local_slot(9)
        assert starts[-1] == local_slot(16)

    def test_explicit_duration_without_service(self, resolver, provider):
        starts = resolver.resolve_start_times(provider.id, MONDAY, MONDAY, duration_minutes=30)

        assert len(starts) == 16

    def test_confirmed_booking_splits_the_day(self, resolver, provider, service, book):
        book(local_slot(11))

        intervals = resolver.resolve(provider.id, MONDAY, MONDAY, service_id=service.id)

        assert _bounds(intervals) == [
            (local_slot(9), local_slot(11)),
            (local_slot(12), local_slot(17)),
        ]

    def test_live_pending_hold_blocks(self, resolver, provider, service, order_issuer):
        order_issuer.issue_order(OTHER_CUSTOMER, provider.id, service.id, local_slot(10))

        intervals = resolver.resolve(provider.id, MONDAY, MONDAY, service_id=service.id)

        assert _bounds(intervals) == [
            (local_slot(9), local_slot(10)),
            (local_slot(11), local_slot(17)),
        ]

    def test_expired_pending_hold_does_not_block(self, resolver, provider, service, order_issuer, clock):
        order_issuer.issue_order(OTHER_CUSTOMER, provider.id, service.id, local_slot(10))
        clock.advance(minutes=13)

        intervals = resolver.resolve(provider.id, MONDAY, MONDAY, service_id=service.id)

        assert _bounds(intervals) == [(local_slot(9), local_slot(17))]

    def test_buffer_drops_gaps_too_short_for_the_service(self, db, resolver, provider, service, book):
        book(local_slot(10))
        book(local_slot(12))
        provider.buffer_minutes = 15
        db.commit()

        intervals = resolver.resolve(provider.id, MONDAY, MONDAY, service_id=service.id)

        # 09:00-09:45 and 11:15-11:45 are shorter than an hour.
        assert _bounds(intervals) == [(local_slot(13, 15), local_slot(17))]

    def test_unavailable_exception_blanks_the_day(self, db, resolver, provider, service):
        provider.schedule_exceptions = [{"date": MONDAY.isoformat(), "is_available": False}]
        db.commit()

        assert resolver.resolve(provider.id, MONDAY, MONDAY, service_id=service.id) == []

    def test_exception_slots_replace_weekly_rule(self, db, resolver, provider, service):
        provider.schedule_exceptions = [
            {
                "date": MONDAY.isoformat(),
                "is_available": True,
                "slots": [{"start": "10:00", "end": "12:00"}],
            }
        ]
        db.commit()

        intervals = resolver.resolve(provider.id, MONDAY, TUESDAY, service_id=service.id)

        assert _bounds(intervals) == [
            (local_slot(10), local_slot(12)),
            (local_slot(9, day=TUESDAY), local_slot(12, day=TUESDAY)),
        ]

    def test_inactive_and_malformed_slots_are_skipped(self, db, resolver, provider, service):
        provider.recurring_schedule = [
            {
                "day_of_week": 1,
                "slots": [
                    {"start": "09:00", "end": "11:00", "is_active": False},
                    {"start": "late", "end": "17:00"},
                    {"start": "15:00", "end": "14:00"},
                    {"start": "13:00", "end": "15:00"},
                ],
            }
        ]
        db.commit()

        intervals = resolver.resolve(provider.id, MONDAY, MONDAY, service_id=service.id)

        assert _bounds(intervals) == [(local_slot(13), local_slot(15))]

    def test_min_notice_clips_the_start(self, db, resolver, provider, service):
        # Sunday 12:00Z + 18h = Monday 06:00Z = 11:30 local
        provider.min_notice_hours = 18
        db.commit()

        intervals = resolver.resolve(provider.id, MONDAY, MONDAY, service_id=service.id)

        assert _bounds(intervals) == [(local_slot(11, 30), local_slot(17))]

    def test_advance_window_cuts_later_days(self, db, resolver, provider, service):
        provider.advance_booking_days = 1
        db.commit()

        intervals = resolver.resolve(provider.id, MONDAY, TUESDAY, service_id=service.id)

        assert _bounds(intervals) == [(local_slot(9), local_slot(17))]

    def test_end_before_start_is_rejected(self, resolver, provider, service):
        with pytest.raises(ValidationException):
            resolver.resolve(provider.id, TUESDAY, MONDAY, service_id=service.id)

    def test_range_is_capped(self, resolver, provider, service):
        with pytest.raises(ValidationException):
            resolver.resolve(provider.id, MONDAY, MONDAY + timedelta(days=120), service_id=service.id)

    def test_unknown_provider(self, resolver):
        with pytest.raises(NotFoundException) as exc_info:
            resolver.resolve("missing", MONDAY, MONDAY, duration_minutes=60)
        assert exc_info.value.code == "PROVIDER_NOT_FOUND"

    def test_service_of_another_provider_is_not_found(self, resolver, provider):
        with pytest.raises(NotFoundException) as exc_info:
            resolver.resolve(provider.id, MONDAY, MONDAY, service_id="missing")
        assert exc_info.value.code == "SERVICE_NOT_FOUND"

    def test_duration_is_required(self, resolver, provider):
        with pytest.raises(ValidationException):
            resolver.resolve(provider.id, MONDAY, MONDAY)

        with pytest.raises(ValidationException):
            resolver.resolve(provider.id, MONDAY, MONDAY, duration_minutes=0)


class TestIntervalHelpers:
    def test_merge_coalesces_touching_and_overlapping(self):
        merged = merge_intervals(
            [(_utc(5), _utc(6)), (_utc(1), _utc(2)), (_utc(2), _utc(3)), (_utc(5, 30), _utc(7))]
        )
        assert merged == [(_utc(1), _utc(3)), (_utc(5), _utc(7))]

    def test_subtract_leaves_edges(self):
        free = [(_utc(1), _utc(8))]
        busy = [(_utc(2), _utc(3)), (_utc(7), _utc(9))]

        assert subtract_intervals(free, busy) == [(_utc(1), _utc(2)), (_utc(3), _utc(7))]

    def test_subtract_ignores_busy_outside(self):
        free = [(_utc(1), _utc(2))]
        assert subtract_intervals(free, [(_utc(3), _utc(4))]) == free

    def test_start_times_do_not_overrun(self):
        intervals = [FreeInterval(_utc(1), _utc(3, 30))]
        assert start_times_within(intervals, timedelta(hours=1)) == [_utc(1), _utc(2)]

    def test_free_interval_local_bounds(self):
        interval = FreeInterval(local_slot(9), local_slot(10))
        local_start, local_end = interval.local_bounds(330)

        assert local_start.isoformat() == "2030-01-07T09:00:00+05:30"
        assert interval.duration_minutes == 60

    def test_weekday_numbering_starts_on_sunday(self):
        assert sunday_first_weekday(MONDAY) == 1

    def test_fits_schedule(self, provider):
        assert fits_schedule(provider, local_slot(16), local_slot(17))
        assert not fits_schedule(provider, local_slot(16, 30), local_slot(17, 30))
        assert not fits_schedule(provider, local_slot(8), local_slot(9))
