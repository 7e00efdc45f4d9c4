# backend/slotpay/services/payment_verifier.py
"""
Payment Verifier for SlotPay

Authenticates the checkout callback and turns a captured payment into a
confirmed booking. When the slot is gone by the time the money arrives the
payment is still recorded as captured and a compensating refund is queued,
because money and bookings must never disagree silently.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import logging
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import SecretStr, ValidationError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.crypto import verify_payment_signature
from ..core.exceptions import (
    InconsistentStateException,
    InvalidSignatureException,
    NotFoundException,
    ServiceException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..models.booking import Booking, BookingStatus
from ..models.payment import Payment, PaymentStatus, can_advance
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..principal import Actor
from ..repositories.factory import RepositoryFactory
from ..schemas.payment import PaymentVerificationRequest
from .base import BaseService
from .booking_ledger import BookingLedger
from .refund_coordinator import RefundCoordinator

logger = logging.getLogger(__name__)


class VerificationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    SLOT_CONFLICT_REFUND_PENDING = "slot_conflict_refund_pending"


@dataclass(frozen=True)
class VerificationResult:
    outcome: VerificationOutcome
    payment_id: str
    booking_id: Optional[str] = None
    refund_request_id: Optional[str] = None

    @property
    def requires_refund(self) -> bool:
        return self.outcome == VerificationOutcome.SLOT_CONFLICT_REFUND_PENDING


def validation_details(exc: ValidationError) -> list[dict[str, Any]]:
    return [{"loc": [str(part) for part in err["loc"]], "msg": err["msg"]} for err in exc.errors()]


class PaymentVerifier(BaseService):
    """Checkout callback verification and the shared capture path."""

    def __init__(
        self,
        db: Session,
        *,
        key_secret: Optional[Union[str, SecretStr]] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        super().__init__(db)
        self._key_secret = key_secret if key_secret is not None else settings.gateway_key_secret
        self._now_fn = now_fn
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.provider_repository = RepositoryFactory.create_provider_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.reservation_repository = RepositoryFactory.create_reservation_repository(db)
        self.refund_repository = RepositoryFactory.create_refund_request_repository(db)
        self.booking_ledger = BookingLedger(db, now_fn=now_fn)
        self.refund_coordinator = RefundCoordinator(db, now_fn=now_fn)

    @BaseService.measure_operation("verify_payment")
    def verify_payment(
        self, payload: Union[PaymentVerificationRequest, Mapping[str, Any]]
    ) -> VerificationResult:
        """
        Verify ``{order_id, payment_id, signature}`` and capture the payment.

        Nothing in the payload is trusted before the signature matches; a
        mismatch changes no state.
        """
        if isinstance(payload, PaymentVerificationRequest):
            request = payload
        else:
            try:
                request = PaymentVerificationRequest.model_validate(dict(payload))
            except ValidationError as exc:
                raise ValidationException(
                    "Malformed payment callback",
                    code="INVALID_PAYLOAD",
                    details={"errors": validation_details(exc)},
                ) from exc

        try:
            valid = verify_payment_signature(
                request.order_id, request.payment_id, request.signature, self._key_secret
            )
        except ValueError as exc:
            raise ServiceException("Payment signing secret is not configured") from exc

        if not valid:
            prometheus_metrics.record_signature_failure("checkout")
            self.logger.warning(
                "Rejected payment callback with invalid signature",
                extra={
                    "event": "security.invalid_signature",
                    "channel": "checkout",
                    "gateway_order_id": request.order_id,
                    "gateway_payment_id": request.payment_id,
                },
            )
            raise InvalidSignatureException()

        return self.capture(request.order_id, request.payment_id, trigger="verify")

    def capture(self, gateway_order_id: str, gateway_payment_id: str, *, trigger: str) -> VerificationResult:
        """
        Idempotent capture shared by the checkout callback and the webhook.

        Re-delivery with the same gateway payment id returns the first result.
        """
        with self.transaction():
            located = self.payment_repository.get_by_gateway_order_id(gateway_order_id)
            if located is None:
                raise NotFoundException("Unknown payment order", code="ORDER_NOT_FOUND")

            # The provider claim is the first write and serialises concurrent captures.
            if not self.provider_repository.claim_provider(located.provider_id):
                raise NotFoundException("Provider not found", code="PROVIDER_NOT_FOUND")
            payment = self.payment_repository.get_by_gateway_order_id(gateway_order_id, for_update=True)
            if payment is None:
                raise NotFoundException("Unknown payment order", code="ORDER_NOT_FOUND")

            if payment.is_captured:
                if payment.gateway_payment_id == gateway_payment_id:
                    return self._prior_result(payment)
                self.logger.critical(
                    "Order captured twice with different payment ids",
                    extra={
                        "alert": True,
                        "payment_id": payment.id,
                        "gateway_order_id": gateway_order_id,
                        "recorded_payment_id": payment.gateway_payment_id,
                        "incoming_payment_id": gateway_payment_id,
                    },
                )
                raise InconsistentStateException(
                    "Order already captured by a different payment",
                    details={"payment_id": payment.id},
                )

            now = ensure_utc(self._now_fn())
            provider = self.provider_repository.get_by_id(payment.provider_id)
            # A lapsed hold of our own is left for the lost-slot path below.
            self.booking_ledger.purge_expired_holds(
                now, provider_id=payment.provider_id, exclude_payment_id=payment.id
            )

            reservation = self.reservation_repository.get_by_payment_id(payment.id)
            booking: Optional[Booking] = None
            if reservation is not None:
                booking = self.booking_repository.get_by_id(reservation.booking_id, for_update=True)

            slot_held = (
                reservation is not None
                and reservation.is_live(now)
                and booking is not None
                and booking.status == BookingStatus.PENDING.value
                and not self._has_competing_booking(booking, provider.buffer_minutes if provider else 0)
            )

            actor = Actor.system(f"payment_{trigger}")
            payment_before = payment.snapshot()
            if not can_advance(payment.status, PaymentStatus.CAPTURED.value):
                raise InconsistentStateException(
                    "Payment cannot be captured from its current status",
                    details={"payment_id": payment.id, "status": payment.status},
                )
            payment.status = PaymentStatus.CAPTURED.value
            payment.gateway_payment_id = gateway_payment_id
            payment.captured_at = now
            payment.failure_reason = None

            if slot_held and booking is not None and reservation is not None:
                booking_before = booking.snapshot()
                booking.confirm(payment.id, at=now)
                payment.booking_id = booking.id
                payment.verification_outcome = VerificationOutcome.CONFIRMED.value
                self.reservation_repository.delete_entity(reservation)
                self.record_transition("booking", booking.id, "confirmed", actor, booking_before, booking.snapshot())
                self.record_transition("payment", payment.id, "captured", actor, payment_before, payment.snapshot())
                result = VerificationResult(
                    outcome=VerificationOutcome.CONFIRMED, payment_id=payment.id, booking_id=booking.id
                )
            else:
                result = self._handle_lost_slot(payment, payment_before, booking, reservation, actor, trigger)

        prometheus_metrics.record_payment_verification(result.outcome.value)
        self.logger.info(
            "Payment captured",
            extra={
                "payment_id": result.payment_id,
                "booking_id": result.booking_id,
                "outcome": result.outcome.value,
                "trigger": trigger,
            },
        )
        return result

    def _has_competing_booking(self, booking: Booking, buffer_minutes: int) -> bool:
        buffer = timedelta(minutes=buffer_minutes or 0)
        overlapping = self.booking_repository.find_overlapping(
            booking.provider_id,
            ensure_utc(booking.start_at) - buffer,
            ensure_utc(booking.end_at) + buffer,
            exclude_booking_id=booking.id,
        )
        return bool(overlapping)

    def _handle_lost_slot(
        self,
        payment: Payment,
        payment_before: dict[str, Any],
        booking: Optional[Booking],
        reservation: Any,
        actor: Actor,
        trigger: str,
    ) -> VerificationResult:
        """Money arrived but the slot did not survive: keep the capture, refund it."""
        if booking is not None and booking.status == BookingStatus.PENDING.value:
            booking_before = booking.snapshot()
            booking.reject("Slot was no longer available when payment was captured")
            self.record_transition("booking", booking.id, "rejected", actor, booking_before, booking.snapshot())
        if reservation is not None:
            self.reservation_repository.delete_entity(reservation)

        payment.verification_outcome = VerificationOutcome.SLOT_CONFLICT_REFUND_PENDING.value
        self.payment_repository.flush()
        self.record_transition("payment", payment.id, "captured", actor, payment_before, payment.snapshot())

        refund = self.refund_coordinator.stage_compensating_refund(
            payment, booking_id=booking.id if booking is not None else None, trigger=trigger
        )
        self.logger.critical(
            "Captured payment lost its slot; compensating refund queued",
            extra={
                "alert": True,
                "payment_id": payment.id,
                "gateway_order_id": payment.gateway_order_id,
                "booking_id": booking.id if booking is not None else None,
                "refund_request_id": refund.id,
                "amount": str(payment.amount),
            },
        )
        return VerificationResult(
            outcome=VerificationOutcome.SLOT_CONFLICT_REFUND_PENDING,
            payment_id=payment.id,
            booking_id=booking.id if booking is not None else None,
            refund_request_id=refund.id,
        )

    def _prior_result(self, payment: Payment) -> VerificationResult:
        if payment.verification_outcome == VerificationOutcome.SLOT_CONFLICT_REFUND_PENDING.value:
            refund = self.refund_repository.get_open_automatic_for_payment(payment.id)
            return VerificationResult(
                outcome=VerificationOutcome.SLOT_CONFLICT_REFUND_PENDING,
                payment_id=payment.id,
                refund_request_id=refund.id if refund is not None else None,
            )
        return VerificationResult(
            outcome=VerificationOutcome.ALREADY_CONFIRMED,
            payment_id=payment.id,
            booking_id=payment.booking_id,
        )

    @BaseService.measure_operation("record_failed_payment")
    def record_failed_payment(
        self, gateway_order_id: str, gateway_payment_id: Optional[str], reason: Optional[str]
    ) -> Optional[Payment]:
        """
        Gateway reported a failed attempt: fail the payment and free its hold.

        Returns None when the order is unknown; captured payments are left alone.
        """
        with self.transaction():
            payment = self.payment_repository.get_by_gateway_order_id(gateway_order_id, for_update=True)
            if payment is None:
                return None
            if not can_advance(payment.status, PaymentStatus.FAILED.value):
                return payment

            actor = Actor.system("payment_webhook")
            before = payment.snapshot()
            payment.status = PaymentStatus.FAILED.value
            payment.failure_reason = (reason or "Payment failed at the gateway")[:1000]
            if gateway_payment_id and not payment.gateway_payment_id:
                payment.gateway_payment_id = gateway_payment_id
            self.payment_repository.flush()
            self.record_transition("payment", payment.id, "failed", actor, before, payment.snapshot())

            reservation = self.reservation_repository.get_by_payment_id(payment.id)
            if reservation is not None:
                booking = self.booking_repository.get_by_id(reservation.booking_id)
                if booking is not None and booking.status == BookingStatus.PENDING.value:
                    self.record_transition("booking", booking.id, "discarded", actor, booking.snapshot(), None)
                    self.booking_repository.delete_entity(booking)
                self.reservation_repository.delete_entity(reservation)
        prometheus_metrics.record_slot_claim("released")
        return payment
