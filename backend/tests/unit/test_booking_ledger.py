"""
Unit tests for BookingLedger transitions, permissions and hold expiry.
"""

from decimal import Decimal

import pytest

from slotpay.core.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    SlotConflictException,
    ValidationException,
)
from slotpay.core.timezone_utils import ensure_utc
from slotpay.models.audit_log import AuditLog
from slotpay.models.booking import Booking, BookingStatus, ModificationStatus
from slotpay.models.event_outbox import EventOutbox
from slotpay.models.payment import Payment, PaymentStatus
from slotpay.models.refund_request import RefundStatus
from slotpay.models.slot_reservation import SlotReservation
from slotpay.principal import Actor
from tests.helpers import ADMIN, CUSTOMER, OTHER_CUSTOMER, TUESDAY, local_slot


@pytest.fixture
def confirmed(book):
    order, result = book(local_slot(10))
    return order


@pytest.fixture
def as_provider(provider):
    return Actor.provider(provider.id)


class TestReads:
    def test_participants_can_read(self, ledger, confirmed, as_provider):
        assert ledger.get_booking(confirmed.booking_id, Actor.customer(CUSTOMER)).id == confirmed.booking_id
        assert ledger.get_booking(confirmed.booking_id, as_provider).id == confirmed.booking_id
        assert ledger.get_booking(confirmed.booking_id, Actor.admin(ADMIN)).id == confirmed.booking_id

    def test_strangers_cannot_read(self, ledger, confirmed):
        with pytest.raises(ForbiddenException):
            ledger.get_booking(confirmed.booking_id, Actor.customer(OTHER_CUSTOMER))
        with pytest.raises(ForbiddenException):
            ledger.get_booking(confirmed.booking_id, Actor.provider("someone-else"))

    def test_unknown_booking(self, ledger):
        with pytest.raises(NotFoundException) as exc_info:
            ledger.get_booking("missing", Actor.admin(ADMIN))
        assert exc_info.value.code == "BOOKING_NOT_FOUND"

    def test_customers_only_see_their_own(self, ledger, book, as_provider):
        book(local_slot(10))
        book(local_slot(12), customer_id=OTHER_CUSTOMER)

        mine = ledger.list_bookings(Actor.customer(CUSTOMER), customer_id=OTHER_CUSTOMER)
        calendar = ledger.list_bookings(as_provider)

        assert [b.customer_id for b in mine] == [CUSTOMER]
        assert len(calendar) == 2

    def test_admin_filters(self, ledger, book, order_issuer, provider, service):
        book(local_slot(10))
        order_issuer.issue_order(OTHER_CUSTOMER, provider.id, service.id, local_slot(12))
        admin = Actor.admin(ADMIN)

        pending = ledger.list_bookings(admin, provider_id=provider.id, status=BookingStatus.PENDING.value)
        by_customer = ledger.list_bookings(admin, customer_id=CUSTOMER, status=BookingStatus.CONFIRMED.value)

        assert [b.customer_id for b in pending] == [OTHER_CUSTOMER]
        assert [b.customer_id for b in by_customer] == [CUSTOMER]

    def test_admin_must_filter(self, ledger):
        with pytest.raises(ValidationException):
            ledger.list_bookings(Actor.admin(ADMIN))


class TestComplete:
    def test_provider_completes(self, ledger, confirmed, as_provider):
        booking = ledger.complete_booking(confirmed.booking_id, as_provider)

        assert booking.status == BookingStatus.COMPLETED.value
        assert booking.completed_at is not None

    def test_customer_cannot_complete(self, ledger, confirmed):
        with pytest.raises(ForbiddenException):
            ledger.complete_booking(confirmed.booking_id, Actor.customer(CUSTOMER))

    def test_completed_is_terminal(self, ledger, confirmed, as_provider):
        ledger.complete_booking(confirmed.booking_id, as_provider)

        with pytest.raises(InvalidTransitionException):
            ledger.complete_booking(confirmed.booking_id, as_provider)
        with pytest.raises(InvalidTransitionException):
            ledger.cancel_booking(confirmed.booking_id, as_provider)

    def test_pending_cannot_complete(self, ledger, order_issuer, provider, service, as_provider):
        order = order_issuer.issue_order(CUSTOMER, provider.id, service.id, local_slot(10))

        with pytest.raises(InvalidTransitionException) as exc_info:
            ledger.complete_booking(order.booking_id, as_provider)
        assert exc_info.value.details == {"entity": "booking", "from": "pending", "to": "completed"}


class TestCancel:
    def test_customer_cancel_does_not_refund(self, db, ledger, gateway, confirmed):
        result = ledger.cancel_booking(confirmed.booking_id, Actor.customer(CUSTOMER), "  Plans changed ")

        assert result.refund is None
        assert result.booking.status == BookingStatus.CANCELLED.value
        assert result.booking.cancelled_by_role == "customer"
        assert result.booking.cancellation_reason == "Plans changed"
        assert gateway.refund_count() == 0
        assert db.get(Payment, confirmed.payment_id).status == PaymentStatus.CAPTURED.value

    def test_provider_cancel_refunds_in_full(self, db, ledger, gateway, confirmed, as_provider):
        result = ledger.cancel_booking(confirmed.booking_id, as_provider, "Provider unwell")

        assert result.booking.status == BookingStatus.CANCELLED.value
        assert result.refund is not None
        assert result.refund.status == RefundStatus.PROCESSED.value
        assert result.refund.amount == Decimal("500.00")
        assert result.refund.admin_action == "approve"
        assert gateway.refund_count() == 1

        payment = db.get(Payment, confirmed.payment_id)
        assert payment.status == PaymentStatus.REFUNDED.value
        assert payment.refund_amount == Decimal("500.00")
        assert db.query(EventOutbox).filter_by(idempotency_key=f"refund.process:{result.refund.id}").count() == 1

    def test_provider_cancel_survives_gateway_outage(self, ledger, gateway, confirmed, as_provider):
        gateway.fail_next("create_refund")

        result = ledger.cancel_booking(confirmed.booking_id, as_provider)

        assert result.booking.status == BookingStatus.CANCELLED.value
        assert result.refund.status == RefundStatus.FAILED.value

    def test_stranger_cannot_cancel(self, ledger, confirmed):
        with pytest.raises(ForbiddenException):
            ledger.cancel_booking(confirmed.booking_id, Actor.customer(OTHER_CUSTOMER))

    def test_cancel_is_audited(self, db, ledger, confirmed):
        ledger.cancel_booking(confirmed.booking_id, Actor.customer(CUSTOMER))

        rows = db.query(AuditLog).filter_by(entity_type="booking", entity_id=confirmed.booking_id).all()
        assert sorted(row.action for row in rows) == ["cancelled", "confirmed", "created"]
        cancelled = next(row for row in rows if row.action == "cancelled")
        assert cancelled.actor_role == "customer"
        assert cancelled.before["status"] == "confirmed"
        assert cancelled.after["status"] == "cancelled"


class TestReject:
    def test_provider_rejects_pending(self, db, ledger, order_issuer, provider, service, as_provider):
        order = order_issuer.issue_order(CUSTOMER, provider.id, service.id, local_slot(10))

        booking = ledger.reject_booking(order.booking_id, as_provider, "Fully booked that day")

        assert booking.status == BookingStatus.REJECTED.value
        assert booking.rejection_reason == "Fully booked that day"
        assert db.query(SlotReservation).count() == 0
        assert db.get(Payment, order.payment_id).status == PaymentStatus.FAILED.value

    def test_reason_required(self, ledger, order_issuer, provider, service, as_provider):
        order = order_issuer.issue_order(CUSTOMER, provider.id, service.id, local_slot(10))

        with pytest.raises(ValidationException) as exc_info:
            ledger.reject_booking(order.booking_id, as_provider, "   ")
        assert exc_info.value.code == "REJECTION_REASON_REQUIRED"

    def test_customer_cannot_reject(self, ledger, order_issuer, provider, service):
        order = order_issuer.issue_order(CUSTOMER, provider.id, service.id, local_slot(10))

        with pytest.raises(ForbiddenException):
            ledger.reject_booking(order.booking_id, Actor.customer(CUSTOMER), "Changed my mind")

    def test_confirmed_cannot_be_rejected(self, ledger, confirmed, as_provider):
        with pytest.raises(InvalidTransitionException):
            ledger.reject_booking(confirmed.booking_id, as_provider, "Too late")


class TestHoldExpiry:
    def test_release_drops_expired_holds_only(self, db, ledger, order_issuer, provider, service, clock):
        stale = order_issuer.issue_order(CUSTOMER, provider.id, service.id, local_slot(10))
        clock.advance(minutes=10)
        fresh = order_issuer.issue_order(OTHER_CUSTOMER, provider.id, service.id, local_slot(12))
        clock.advance(minutes=3)

        released = ledger.release_expired_reservations()

        assert released == 1
        assert db.get(Booking, stale.booking_id) is None
        assert db.get(Booking, fresh.booking_id).status == BookingStatus.PENDING.value
        assert db.get(Payment, stale.payment_id).failure_reason == "Reservation expired before payment"

    def test_nothing_to_release(self, ledger, order_issuer, provider, service):
        order_issuer.issue_order(CUSTOMER, provider.id, service.id, local_slot(10))

        assert ledger.release_expired_reservations() == 0


class TestModification:
    def test_customer_proposes_and_provider_approves(self, db, ledger, confirmed, as_provider):
        new_start = local_slot(14)

        proposed = ledger.request_modification(
            confirmed.booking_id, Actor.customer(CUSTOMER), new_start, "Clinic visit clashes with work"
        )
        assert proposed.modification_status == ModificationStatus.PENDING.value
        assert ensure_utc(proposed.start_at) == local_slot(10)
        assert ensure_utc(proposed.proposed_end_at) == local_slot(15)

        moved = ledger.respond_to_modification(confirmed.booking_id, as_provider, approve=True)

        booking = db.get(Booking, moved.id)
        assert booking.modification_status == ModificationStatus.APPROVED.value
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.modification_responded_by == as_provider.id
        assert ledger.booking_repository.find_overlapping(
            booking.provider_id, new_start, local_slot(15)
        ) == [booking]
        assert ledger.booking_repository.find_overlapping(booking.provider_id, local_slot(10), local_slot(11)) == []

    def test_provider_proposes_and_customer_rejects(self, db, ledger, confirmed, as_provider):
        ledger.request_modification(confirmed.booking_id, as_provider, local_slot(9, 0, TUESDAY))

        ledger.respond_to_modification(confirmed.booking_id, Actor.customer(CUSTOMER), approve=False)

        booking = db.get(Booking, confirmed.booking_id)
        assert booking.modification_status == ModificationStatus.REJECTED.value
        assert ledger.booking_repository.find_overlapping(
            booking.provider_id, local_slot(10), local_slot(11)
        ) == [booking]

    def test_requester_cannot_answer_their_own_proposal(self, ledger, confirmed):
        customer = Actor.customer(CUSTOMER)
        ledger.request_modification(confirmed.booking_id, customer, local_slot(14))

        with pytest.raises(ForbiddenException):
            ledger.respond_to_modification(confirmed.booking_id, customer, approve=True)

    def test_strangers_cannot_propose(self, ledger, confirmed):
        with pytest.raises(ForbiddenException):
            ledger.request_modification(confirmed.booking_id, Actor.customer(OTHER_CUSTOMER), local_slot(14))

    def test_one_open_proposal_at_a_time(self, ledger, confirmed, as_provider):
        ledger.request_modification(confirmed.booking_id, Actor.customer(CUSTOMER), local_slot(14))

        with pytest.raises(ConflictException) as exc_info:
            ledger.request_modification(confirmed.booking_id, as_provider, local_slot(15))
        assert exc_info.value.code == "MODIFICATION_PENDING"

    def test_nothing_to_answer(self, ledger, confirmed, as_provider):
        with pytest.raises(ValidationException) as exc_info:
            ledger.respond_to_modification(confirmed.booking_id, as_provider, approve=True)
        assert exc_info.value.code == "NO_PENDING_MODIFICATION"

    def test_new_start_must_fit_the_schedule(self, ledger, confirmed):
        with pytest.raises(ValidationException) as exc_info:
            ledger.request_modification(confirmed.booking_id, Actor.customer(CUSTOMER), local_slot(18))
        assert exc_info.value.code == "OUTSIDE_SCHEDULE"

    def test_naive_start_is_refused(self, ledger, confirmed):
        with pytest.raises(ValidationException) as exc_info:
            ledger.request_modification(
                confirmed.booking_id, Actor.customer(CUSTOMER), local_slot(14).replace(tzinfo=None)
            )
        assert exc_info.value.code == "NAIVE_DATETIME"

    def test_completed_booking_cannot_move(self, ledger, confirmed, as_provider):
        ledger.complete_booking(confirmed.booking_id, as_provider)

        with pytest.raises(InvalidTransitionException):
            ledger.request_modification(confirmed.booking_id, Actor.customer(CUSTOMER), local_slot(14))

    def test_busy_target_is_refused_up_front(self, ledger, book, confirmed):
        book(local_slot(14), customer_id=OTHER_CUSTOMER)

        with pytest.raises(SlotConflictException):
            ledger.request_modification(confirmed.booking_id, Actor.customer(CUSTOMER), local_slot(14, 30))

    def test_approval_rechecks_overlap(self, db, ledger, book, confirmed, as_provider):
        ledger.request_modification(confirmed.booking_id, Actor.customer(CUSTOMER), local_slot(14))
        book(local_slot(14), customer_id=OTHER_CUSTOMER)

        with pytest.raises(SlotConflictException):
            ledger.respond_to_modification(confirmed.booking_id, as_provider, approve=True)

        booking = db.get(Booking, confirmed.booking_id)
        assert booking.modification_status == ModificationStatus.PENDING.value
        assert ledger.booking_repository.find_overlapping(
            booking.provider_id, local_slot(10), local_slot(11)
        ) == [booking]

    def test_pending_booking_moves_its_hold(self, db, ledger, order_issuer, provider, service, as_provider):
        order = order_issuer.issue_order(CUSTOMER, provider.id, service.id, local_slot(10))
        ledger.request_modification(order.booking_id, Actor.customer(CUSTOMER), local_slot(12))

        ledger.respond_to_modification(order.booking_id, as_provider, approve=True)

        reservation = db.query(SlotReservation).filter_by(booking_id=order.booking_id).one()
        assert ensure_utc(reservation.start_at) == local_slot(12)
        assert ensure_utc(reservation.end_at) == local_slot(13)

    def test_pending_booking_with_lapsed_hold_cannot_move(
        self, ledger, order_issuer, provider, service, as_provider, clock
    ):
        order = order_issuer.issue_order(CUSTOMER, provider.id, service.id, local_slot(10))
        ledger.request_modification(order.booking_id, Actor.customer(CUSTOMER), local_slot(12))
        clock.advance(minutes=13)

        with pytest.raises(ValidationException) as exc_info:
            ledger.respond_to_modification(order.booking_id, as_provider, approve=True)
        assert exc_info.value.code == "RESERVATION_EXPIRED"

    def test_every_step_is_audited(self, db, ledger, confirmed, as_provider):
        ledger.request_modification(confirmed.booking_id, Actor.customer(CUSTOMER), local_slot(14))
        ledger.respond_to_modification(confirmed.booking_id, as_provider, approve=True)

        actions = {
            row.action
            for row in db.query(AuditLog).filter_by(entity_type="booking", entity_id=confirmed.booking_id)
        }
        assert {"modification_requested", "modification_approved"} <= actions
