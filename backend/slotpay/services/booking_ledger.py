# backend/slotpay/services/booking_ledger.py
"""
Booking Ledger for SlotPay

Holds the booking state machine and the housekeeping around reservation
holds:

    pending -> confirmed -> completed | cancelled
    pending -> rejected

Confirmation itself belongs to PaymentVerifier; everything else that moves a
booking goes through here, and every move is audited. Pending and confirmed
bookings may also be rescheduled: one party proposes a new start, the other
approves or rejects it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import (
    ConflictException,
    ForbiddenException,
    GatewayException,
    InvalidTransitionException,
    NotFoundException,
    SlotConflictException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..integrations.payment_gateway_client import PaymentGatewayClient
from ..models.booking import MODIFIABLE_STATUSES, Booking, BookingStatus
from ..models.payment import PaymentStatus, can_advance
from ..models.provider import Provider
from ..models.refund_request import RefundRequest
from ..models.slot_reservation import SlotReservation
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..principal import Actor, ActorRole
from ..repositories.factory import RepositoryFactory
from .availability_resolver import validate_interval
from .base import BaseService
from .refund_coordinator import RefundCoordinator

logger = logging.getLogger(__name__)

MODIFICATION_REASON_MAX_LENGTH = 300


@dataclass
class CancellationResult:
    booking: Booking
    refund: Optional[RefundRequest] = None


class BookingLedger(BaseService):
    """Booking transitions, listings and reservation expiry."""

    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGatewayClient] = None,
        *,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        super().__init__(db)
        self._now_fn = now_fn
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.reservation_repository = RepositoryFactory.create_reservation_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.provider_repository = RepositoryFactory.create_provider_repository(db)
        self.refund_coordinator = RefundCoordinator(db, gateway, now_fn=now_fn)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load(self, booking_id: str, *, for_update: bool = False) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id, for_update=for_update)
        if booking is None:
            raise NotFoundException("Booking not found", code="BOOKING_NOT_FOUND")
        return booking

    @staticmethod
    def _is_participant(actor: Actor, booking: Booking) -> bool:
        if actor.is_staff:
            return True
        if actor.role == ActorRole.CUSTOMER:
            return actor.id == booking.customer_id
        if actor.role == ActorRole.PROVIDER:
            return actor.id == booking.provider_id
        return False

    def get_booking(self, booking_id: str, actor: Actor) -> Booking:
        booking = self._load(booking_id)
        if not self._is_participant(actor, booking):
            raise ForbiddenException("You do not have access to this booking")
        return booking

    def list_bookings(
        self,
        actor: Actor,
        *,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Booking]:
        """Customers see their own bookings, providers their calendar, admins either."""
        if actor.role == ActorRole.CUSTOMER:
            customer_id, provider_id = actor.id, None
        elif actor.role == ActorRole.PROVIDER:
            customer_id, provider_id = None, actor.id

        if provider_id:
            return self.booking_repository.list_for_provider(provider_id, status=status, limit=limit)
        if customer_id:
            bookings = self.booking_repository.list_for_customer(customer_id, limit=limit)
            if status:
                bookings = [b for b in bookings if b.status == status]
            return bookings
        raise ValidationException("Specify a customer_id or provider_id to list bookings")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _require_transition(self, booking: Booking, target: BookingStatus) -> None:
        if not booking.can_transition_to(target.value):
            raise InvalidTransitionException("booking", booking.status, target.value)

    def _require_provider_side(self, actor: Actor, booking: Booking, action: str) -> None:
        if actor.is_staff:
            return
        if actor.role == ActorRole.PROVIDER and actor.id == booking.provider_id:
            return
        raise ForbiddenException(f"Only the provider or an admin can {action} this booking")

    @BaseService.measure_operation("complete_booking")
    def complete_booking(self, booking_id: str, actor: Actor) -> Booking:
        with self.transaction():
            booking = self._load(booking_id, for_update=True)
            self._require_provider_side(actor, booking, "complete")
            self._require_transition(booking, BookingStatus.COMPLETED)
            before = booking.snapshot()
            booking.complete(at=self._now_fn())
            self.booking_repository.flush()
            self.record_transition("booking", booking.id, "completed", actor, before, booking.snapshot())
        return booking

    @BaseService.measure_operation("reject_booking")
    def reject_booking(self, booking_id: str, actor: Actor, reason: str) -> Booking:
        """Decline a pending booking and free its slot."""
        cleaned = (reason or "").strip()
        if not cleaned:
            raise ValidationException("A reason is required to reject a booking", code="REJECTION_REASON_REQUIRED")

        with self.transaction():
            booking = self._load(booking_id, for_update=True)
            self._require_provider_side(actor, booking, "reject")
            self._require_transition(booking, BookingStatus.REJECTED)
            before = booking.snapshot()
            booking.reject(cleaned)
            self.booking_repository.flush()
            self.record_transition("booking", booking.id, "rejected", actor, before, booking.snapshot())

            reservation = self.reservation_repository.get_by_booking_id(booking.id)
            if reservation is not None:
                self._fail_unpaid_payment(reservation.payment_id, "Booking rejected before payment", actor)
                self.reservation_repository.delete_entity(reservation)
        return booking

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self, booking_id: str, actor: Actor, reason: Optional[str] = None
    ) -> CancellationResult:
        """
        Cancel a confirmed booking.

        When the provider or an admin cancels, a full refund of the captured
        payment is raised and approved in the same transaction, then sent to
        the gateway after commit. A customer cancellation leaves the refund to
        a separate request.
        """
        refund: Optional[RefundRequest] = None
        with self.transaction():
            booking = self._load(booking_id, for_update=True)
            if not self._is_participant(actor, booking):
                raise ForbiddenException("You do not have access to this booking")
            self._require_transition(booking, BookingStatus.CANCELLED)
            cleaned = (reason or "").strip() or None
            before = booking.snapshot()
            booking.cancel(actor.id, actor.role.value, cleaned, at=self._now_fn())
            self.booking_repository.flush()
            self.record_transition("booking", booking.id, "cancelled", actor, before, booking.snapshot())

            if actor.role != ActorRole.CUSTOMER and booking.payment_id:
                payment = self.payment_repository.get_by_id(booking.payment_id, for_update=True)
                if payment is not None and payment.is_captured:
                    refund = self.refund_coordinator.stage_cancellation_refund(
                        payment, booking, actor, cleaned
                    )

        if refund is not None:
            try:
                refund = self.refund_coordinator.dispatch(refund.id)
            except GatewayException as exc:
                # The refund is persisted as failed and its outbox event retries it.
                self.logger.warning(
                    "Cancellation refund deferred to outbox",
                    extra={"booking_id": booking_id, "refund_request_id": refund.id, "error": exc.message},
                )
                refund = self.refund_coordinator.refund_repository.get_by_id(refund.id) or refund
        return CancellationResult(booking=booking, refund=refund)

    # ------------------------------------------------------------------
    # Reschedule proposals
    # ------------------------------------------------------------------

    @BaseService.measure_operation("request_modification")
    def request_modification(
        self,
        booking_id: str,
        actor: Actor,
        new_start: datetime,
        reason: Optional[str] = None,
    ) -> Booking:
        """
        Propose moving a pending or confirmed booking to ``new_start``.

        The duration is kept. The other party (or an admin) settles the
        proposal through respond_to_modification; until then the booking keeps
        its current interval and no further proposal may be opened.
        """
        if new_start.tzinfo is None:
            raise ValidationException("New start must carry a UTC offset", code="NAIVE_DATETIME")
        cleaned = (reason or "").strip() or None
        if cleaned and len(cleaned) > MODIFICATION_REASON_MAX_LENGTH:
            raise ValidationException(
                f"Reason must be at most {MODIFICATION_REASON_MAX_LENGTH} characters",
                code="MODIFICATION_REASON_TOO_LONG",
            )

        with self.transaction():
            booking = self._claim_booking(booking_id, actor)
            self._require_modifiable(booking)
            if booking.has_open_modification:
                raise ConflictException(
                    "A modification request is already pending", code="MODIFICATION_PENDING"
                )

            start_at = ensure_utc(new_start)
            end_at = start_at + (ensure_utc(booking.end_at) - ensure_utc(booking.start_at))
            if start_at == ensure_utc(booking.start_at):
                raise ValidationException(
                    "New start is the booking's current start", code="MODIFICATION_UNCHANGED"
                )
            now = ensure_utc(self._now_fn())
            provider = self._load_provider(booking.provider_id)
            validate_interval(provider, start_at, end_at, now)
            self._require_live_hold(booking, now)
            self.purge_expired_holds(now, provider_id=booking.provider_id)
            # Checked again on approval.
            if self._overlaps(booking, provider, start_at, end_at):
                raise SlotConflictException(
                    details={"booking_id": booking.id, "start_at": start_at.isoformat()}
                )

            before = booking.snapshot()
            booking.propose_modification(start_at, end_at, actor.id, actor.role.value, cleaned, at=now)
            self.booking_repository.flush()
            self.record_transition(
                "booking", booking.id, "modification_requested", actor, before, booking.snapshot()
            )

        self.logger.info(
            "Booking modification requested",
            extra={
                "booking_id": booking.id,
                "requested_by_role": actor.role.value,
                "proposed_start_at": start_at.isoformat(),
            },
        )
        return booking

    @BaseService.measure_operation("respond_to_modification")
    def respond_to_modification(self, booking_id: str, actor: Actor, approve: bool) -> Booking:
        """
        Approve or reject the open reschedule proposal.

        Runs under the provider claim. On approval expired holds are released
        and the proposed interval is re-checked against every other live
        booking before the booking (and, while pending, its hold) moves.
        """
        with self.transaction():
            booking = self._claim_booking(booking_id, actor)

            if not booking.has_open_modification:
                raise ValidationException(
                    "No modification request is pending", code="NO_PENDING_MODIFICATION"
                )
            if not actor.is_staff and actor.id == booking.modification_requested_by:
                raise ForbiddenException("You cannot respond to your own modification request")
            self._require_modifiable(booking)

            now = ensure_utc(self._now_fn())
            before = booking.snapshot()
            if approve:
                self._move_booking(booking, now)
            booking.settle_modification(approve, actor.id, at=now)
            self.booking_repository.flush()
            action = "modification_approved" if approve else "modification_rejected"
            self.record_transition("booking", booking.id, action, actor, before, booking.snapshot())

        self.logger.info(
            "Booking modification settled",
            extra={"booking_id": booking.id, "approved": approve, "start_at": booking.start_at.isoformat()},
        )
        return booking

    def _claim_booking(self, booking_id: str, actor: Actor) -> Booking:
        """Take the provider claim, then re-read the booking under it."""
        booking = self._load(booking_id)
        if not self._is_participant(actor, booking):
            raise ForbiddenException("You do not have access to this booking")
        if not self.provider_repository.claim_provider(booking.provider_id):
            raise NotFoundException("Provider not found", code="PROVIDER_NOT_FOUND")
        return self.booking_repository.refresh(booking, for_update=True)

    def _require_modifiable(self, booking: Booking) -> None:
        if booking.status not in MODIFIABLE_STATUSES:
            raise InvalidTransitionException("booking", booking.status, "modified")

    def _require_live_hold(self, booking: Booking, now: datetime) -> Optional[SlotReservation]:
        """A pending booking can only move while its hold is live; returns that hold."""
        if booking.status != BookingStatus.PENDING.value:
            return None
        reservation = self.reservation_repository.get_by_booking_id(booking.id)
        if reservation is None or not reservation.is_live(now):
            raise ValidationException("The booking's hold has expired", code="RESERVATION_EXPIRED")
        return reservation

    def _load_provider(self, provider_id: str) -> Provider:
        provider = self.provider_repository.get_by_id(provider_id)
        if provider is None:
            raise NotFoundException("Provider not found", code="PROVIDER_NOT_FOUND")
        return provider

    def _overlaps(self, booking: Booking, provider: Provider, start_at: datetime, end_at: datetime) -> bool:
        buffer = timedelta(minutes=provider.buffer_minutes or 0)
        overlapping = self.booking_repository.find_overlapping(
            booking.provider_id, start_at - buffer, end_at + buffer, exclude_booking_id=booking.id
        )
        return bool(overlapping)

    def _move_booking(self, booking: Booking, now: datetime) -> None:
        """Checks run inside the provider claim; raises if the proposed interval is gone."""
        start_at = ensure_utc(booking.proposed_start_at)
        end_at = ensure_utc(booking.proposed_end_at)
        provider = self._load_provider(booking.provider_id)
        validate_interval(provider, start_at, end_at, now)

        reservation = self._require_live_hold(booking, now)
        self.purge_expired_holds(now, provider_id=booking.provider_id)

        if self._overlaps(booking, provider, start_at, end_at):
            prometheus_metrics.record_slot_claim("conflict")
            raise SlotConflictException(
                details={"booking_id": booking.id, "start_at": start_at.isoformat()}
            )
        if reservation is not None:
            reservation.start_at = start_at
            reservation.end_at = end_at

    def _fail_unpaid_payment(self, payment_id: str, reason: str, actor: Actor) -> None:
        payment = self.payment_repository.get_by_id(payment_id, for_update=True)
        if payment is None or not can_advance(payment.status, PaymentStatus.FAILED.value):
            return
        before = payment.snapshot()
        payment.status = PaymentStatus.FAILED.value
        payment.failure_reason = reason
        self.payment_repository.flush()
        self.record_transition("payment", payment.id, "failed", actor, before, payment.snapshot())

    # ------------------------------------------------------------------
    # Reservation expiry
    # ------------------------------------------------------------------

    def purge_expired_holds(
        self,
        now: datetime,
        *,
        provider_id: Optional[str] = None,
        exclude_payment_id: Optional[str] = None,
    ) -> int:
        """
        Drop expired holds, their pending bookings and unpaid payments.

        Flushes only; runs inside the caller's transaction (a slot claim or
        the periodic sweep). Returns the number of holds released. The hold
        belonging to ``exclude_payment_id`` is left alone so a capture in
        progress can settle it itself.
        """
        now = ensure_utc(now)
        expired = self.reservation_repository.list_expired(
            now, provider_id=provider_id, exclude_payment_id=exclude_payment_id
        )
        if not expired:
            return 0

        system = Actor.system("reservation_sweeper")
        for reservation in expired:
            booking = self.booking_repository.get_by_id(reservation.booking_id)
            if booking is not None and booking.status == BookingStatus.PENDING.value:
                self.record_transition("booking", booking.id, "expired", system, booking.snapshot(), None)
                self.booking_repository.delete_entity(booking)
            self._fail_unpaid_payment(reservation.payment_id, "Reservation expired before payment", system)
            self.reservation_repository.delete_entity(reservation)

        prometheus_metrics.record_slot_claim("released")
        self.logger.info(
            "Released expired reservations",
            extra={"released": len(expired), "provider_id": provider_id},
        )
        return len(expired)

    @BaseService.measure_operation("release_expired_reservations")
    def release_expired_reservations(self, now: Optional[datetime] = None) -> int:
        with self.transaction():
            return self.purge_expired_holds(now or self._now_fn())
