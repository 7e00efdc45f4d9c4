# backend/slotpay/services/refund_coordinator.py
"""
Refund Coordinator for SlotPay

Owns the refund request workflow:

    pending --approve--> processing --gateway processed--> processed
    pending --reject(reason)--> rejected
    processing --gateway failure--> failed --retry--> processing

Gateway calls always happen after the ``processing`` state is committed and
never inside a transaction. The refund request id is the gateway
idempotency key, so approve, retry and the outbox worker can all resend the
same call safely.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    ForbiddenException,
    GatewayException,
    InconsistentStateException,
    InvalidTransitionException,
    NotFoundException,
    ServiceException,
    ValidationException,
)
from ..core.timezone_utils import utc_now
from ..core.ulid_helper import generate_ulid
from ..integrations.payment_gateway_client import PaymentGatewayClient, PaymentGatewayError
from ..models.booking import Booking, BookingStatus
from ..models.event_outbox import OutboxEventType
from ..models.payment import Payment, PaymentStatus, can_advance
from ..models.refund_request import RefundRequest, RefundStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..principal import Actor, ActorRole
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

COMPENSATING_REFUND_REASON = (
    "Automatic refund: payment was captured after its slot was no longer available"
)

# Gateway refund status -> local terminal status
_GATEWAY_STATUS_MAP = {
    "processed": RefundStatus.PROCESSED.value,
    "failed": RefundStatus.FAILED.value,
}


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


class RefundCoordinator(BaseService):
    """Creates, approves, rejects, retries and reconciles refund requests."""

    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGatewayClient] = None,
        *,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        super().__init__(db)
        self.gateway = gateway
        self._now_fn = now_fn
        self.refund_repository = RepositoryFactory.create_refund_request_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.event_outbox_repository = RepositoryFactory.create_event_outbox_repository(db)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_refund(self, refund_id: str, actor: Actor) -> RefundRequest:
        refund = self._load(refund_id)
        if not actor.is_staff:
            payment = self.payment_repository.get_by_id(refund.payment_id)
            if payment is None or payment.customer_id != actor.id:
                raise ForbiddenException("You cannot view this refund request")
        return refund

    def list_for_payment(self, payment_id: str, actor: Actor) -> list[RefundRequest]:
        payment = self.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise NotFoundException("Payment not found", code="PAYMENT_NOT_FOUND")
        if not actor.is_staff and payment.customer_id != actor.id:
            raise ForbiddenException("You cannot view refunds for this payment")
        return self.refund_repository.list_for_payment(payment_id)

    def _load(self, refund_id: str, *, for_update: bool = False) -> RefundRequest:
        refund = self.refund_repository.get_by_id(refund_id, for_update=for_update)
        if refund is None:
            raise NotFoundException("Refund request not found", code="REFUND_NOT_FOUND")
        return refund

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    @BaseService.measure_operation("submit_refund")
    def submit_refund(
        self,
        payment_id: str,
        actor: Actor,
        *,
        reason: str,
        amount: Optional[Decimal] = None,
    ) -> RefundRequest:
        """
        File a refund request against a captured payment.

        ``amount`` defaults to everything that is still refundable. The sum of
        pending, processing, failed and processed requests may never exceed
        the captured amount.
        """
        with self.transaction():
            # First write of the transaction; rival submissions wait here.
            if not self.payment_repository.claim_payment(payment_id):
                raise NotFoundException("Payment not found", code="PAYMENT_NOT_FOUND")
            payment = self.payment_repository.get_by_id(payment_id, for_update=True)
            if payment is None:
                raise NotFoundException("Payment not found", code="PAYMENT_NOT_FOUND")
            if not (actor.is_staff or (actor.role == ActorRole.CUSTOMER and actor.id == payment.customer_id)):
                raise ForbiddenException("Only the payer or an admin may request a refund")
            if not payment.is_captured:
                raise ValidationException(
                    "Only captured payments can be refunded",
                    code="PAYMENT_NOT_CAPTURED",
                    details={"payment_status": payment.status},
                )
            cleaned = self._clean_reason(reason, actor)
            refund = self._stage(payment, actor, amount=amount, reason=cleaned, is_automatic=False)

        self.logger.info(
            "Refund request submitted",
            extra={"refund_request_id": refund.id, "payment_id": payment_id, "amount": str(refund.amount)},
        )
        return refund

    def _clean_reason(self, reason: Optional[str], actor: Actor) -> str:
        cleaned = (reason or "").strip()
        if actor.is_system:
            return cleaned or "Automatic refund"
        if len(cleaned) < settings.refund_reason_min_length:
            raise ValidationException(
                f"Refund reason must be at least {settings.refund_reason_min_length} characters",
                code="REFUND_REASON_TOO_SHORT",
            )
        if len(cleaned) > settings.refund_reason_max_length:
            raise ValidationException(
                f"Refund reason must be at most {settings.refund_reason_max_length} characters",
                code="REFUND_REASON_TOO_LONG",
            )
        return cleaned

    def _available(self, payment: Payment) -> Decimal:
        committed = self.refund_repository.committed_amount_for_payment(payment.id)
        return _money(payment.amount) - _money(committed)

    def _stage(
        self,
        payment: Payment,
        actor: Actor,
        *,
        amount: Optional[Decimal],
        reason: str,
        is_automatic: bool,
        booking_id: Optional[str] = None,
    ) -> RefundRequest:
        available = self._available(payment)
        requested = _money(amount) if amount is not None else available
        if requested <= 0:
            raise ValidationException(
                "Nothing left to refund" if amount is None else "Refund amount must be positive",
                code="REFUND_AMOUNT_INVALID",
                details={"available": str(available)},
            )
        if requested > available:
            raise ValidationException(
                "Refund amount exceeds what is still refundable on this payment",
                code="REFUND_EXCEEDS_CAPTURED",
                details={"requested": str(requested), "available": str(available)},
            )

        refund = RefundRequest(
            id=generate_ulid(),
            payment_id=payment.id,
            booking_id=booking_id or payment.booking_id,
            requested_by=actor.id,
            requested_by_role=actor.role.value,
            is_automatic=is_automatic,
            amount=requested,
            currency=payment.currency,
            reason=reason,
            status=RefundStatus.PENDING.value,
            attempt_count=0,
        )
        self.refund_repository.add(refund)
        self.record_transition("refund_request", refund.id, "submitted", actor, None, refund.snapshot())
        prometheus_metrics.record_refund_outcome(RefundStatus.PENDING.value)
        return refund

    def stage_compensating_refund(
        self, payment: Payment, *, booking_id: Optional[str], trigger: str
    ) -> RefundRequest:
        """
        Full automatic refund for money captured without a slot.

        Runs inside the caller's transaction; the outbox row makes sure the
        gateway call happens even if this process dies right after commit.
        """
        existing = self.refund_repository.get_open_automatic_for_payment(payment.id)
        if existing is not None:
            return existing

        refund = self._stage(
            payment,
            Actor.system("payment_verifier"),
            amount=None,
            reason=COMPENSATING_REFUND_REASON,
            is_automatic=True,
            booking_id=booking_id,
        )
        self.event_outbox_repository.enqueue(
            OutboxEventType.COMPENSATING_REFUND,
            refund.id,
            payload={"refund_request_id": refund.id, "payment_id": payment.id, "trigger": trigger},
        )
        prometheus_metrics.record_compensating_refund(trigger)
        return refund

    def stage_cancellation_refund(
        self, payment: Payment, booking: Booking, actor: Actor, reason: Optional[str]
    ) -> Optional[RefundRequest]:
        """
        Full refund for a booking cancelled by its provider or an admin.

        The request is approved on the spot (it moves straight to processing);
        returns None when nothing is left to refund.
        """
        if self._available(payment) <= 0:
            return None

        refund = self._stage(
            payment,
            actor,
            amount=None,
            reason=reason or f"Booking cancelled by {actor.role.value}",
            is_automatic=True,
            booking_id=booking.id,
        )
        before = refund.snapshot()
        refund.status = RefundStatus.PROCESSING.value
        refund.admin_id = actor.id
        refund.admin_action = "approve"
        refund.admin_reason = "Approved automatically on cancellation"
        refund.responded_at = self._now_fn()
        refund.attempt_count = 1
        self.refund_repository.flush()
        self.record_transition("refund_request", refund.id, "approved", actor, before, refund.snapshot())
        self.event_outbox_repository.enqueue(
            OutboxEventType.PROCESS_REFUND,
            refund.id,
            payload={"refund_request_id": refund.id, "payment_id": payment.id, "trigger": "cancellation"},
        )
        prometheus_metrics.record_compensating_refund("cancellation")
        return refund

    # ------------------------------------------------------------------
    # Admin decisions
    # ------------------------------------------------------------------

    def _require_staff(self, actor: Actor) -> None:
        if not actor.is_staff:
            raise ForbiddenException("Only an admin can decide refund requests")

    @BaseService.measure_operation("approve_refund")
    def approve_refund(self, refund_id: str, actor: Actor, *, note: Optional[str] = None) -> RefundRequest:
        """Move pending -> processing, commit, then submit to the gateway."""
        self._require_staff(actor)
        with self.transaction():
            refund = self._load(refund_id, for_update=True)
            if refund.status != RefundStatus.PENDING.value:
                raise InvalidTransitionException("refund_request", refund.status, RefundStatus.PROCESSING.value)
            before = refund.snapshot()
            refund.status = RefundStatus.PROCESSING.value
            refund.admin_id = actor.id
            refund.admin_action = "approve"
            refund.admin_reason = (note or "").strip() or None
            refund.responded_at = self._now_fn()
            refund.attempt_count = (refund.attempt_count or 0) + 1
            self.refund_repository.flush()
            self.record_transition("refund_request", refund.id, "approved", actor, before, refund.snapshot())

        prometheus_metrics.record_refund_outcome(RefundStatus.PROCESSING.value)
        return self.dispatch(refund_id)

    @BaseService.measure_operation("reject_refund")
    def reject_refund(self, refund_id: str, actor: Actor, reason: str) -> RefundRequest:
        self._require_staff(actor)
        cleaned = (reason or "").strip()
        if not cleaned:
            raise ValidationException("A reason is required to reject a refund", code="REJECTION_REASON_REQUIRED")

        with self.transaction():
            refund = self._load(refund_id, for_update=True)
            if not refund.can_transition_to(RefundStatus.REJECTED.value):
                raise InvalidTransitionException("refund_request", refund.status, RefundStatus.REJECTED.value)
            before = refund.snapshot()
            refund.status = RefundStatus.REJECTED.value
            refund.admin_id = actor.id
            refund.admin_action = "reject"
            refund.admin_reason = cleaned
            refund.responded_at = self._now_fn()
            self.refund_repository.flush()
            self.record_transition("refund_request", refund.id, "rejected", actor, before, refund.snapshot())

        prometheus_metrics.record_refund_outcome(RefundStatus.REJECTED.value)
        return refund

    @BaseService.measure_operation("retry_refund")
    def retry_refund(self, refund_id: str, actor: Actor) -> RefundRequest:
        """Move failed -> processing and resend with the same idempotency key."""
        self._require_staff(actor)
        with self.transaction():
            refund = self._load(refund_id, for_update=True)
            if refund.status != RefundStatus.FAILED.value:
                raise InvalidTransitionException("refund_request", refund.status, RefundStatus.PROCESSING.value)
            before = refund.snapshot()
            refund.status = RefundStatus.PROCESSING.value
            refund.failure_reason = None
            refund.attempt_count = (refund.attempt_count or 0) + 1
            self.refund_repository.flush()
            self.record_transition("refund_request", refund.id, "retried", actor, before, refund.snapshot())

        return self.dispatch(refund_id)

    # ------------------------------------------------------------------
    # Gateway interaction
    # ------------------------------------------------------------------

    def dispatch(self, refund_id: str) -> RefundRequest:
        """
        Submit (or, once submitted, poll) a processing refund at the gateway.

        Must be called with no transaction open. A failed submission is
        persisted as ``failed`` before GatewayException is raised.
        """
        if self.gateway is None:
            raise ServiceException("Payment gateway is not configured", code="GATEWAY_NOT_CONFIGURED")

        refund = self._load(refund_id)
        if refund.status != RefundStatus.PROCESSING.value:
            return refund
        payment = self.payment_repository.get_by_id(refund.payment_id)
        if payment is None or not payment.gateway_payment_id:
            raise InconsistentStateException(
                "Refund points at a payment without a gateway payment id",
                details={"refund_request_id": refund.id},
            )

        if refund.gateway_refund_id:
            try:
                response = self.gateway.get_refund(refund.gateway_refund_id)
            except PaymentGatewayError as exc:
                self.logger.warning(
                    "Refund status poll failed",
                    extra={"refund_request_id": refund.id, "error": str(exc)},
                )
                raise GatewayException(
                    "Could not fetch refund status from the payment gateway",
                    upstream_status=exc.status_code,
                    details={"refund_request_id": refund.id, "retryable": exc.retryable},
                ) from exc
            return self._apply_gateway_response(refund.id, response)

        try:
            response = self.gateway.create_refund(
                payment_id=payment.gateway_payment_id,
                amount=_money(refund.amount),
                idempotency_key=refund.idempotency_key,
                receipt=f"rfnd_{refund.id}"[:40],
                notes={"refund_request_id": refund.id, "payment_id": payment.id},
            )
        except PaymentGatewayError as exc:
            self._record_submission_failure(refund.id, exc)
            raise GatewayException(
                "Refund could not be submitted to the payment gateway",
                upstream_status=exc.status_code,
                details={"refund_request_id": refund.id, "retryable": exc.retryable},
            ) from exc
        return self._apply_gateway_response(refund.id, response)

    def _record_submission_failure(self, refund_id: str, exc: PaymentGatewayError) -> None:
        with self.transaction():
            refund = self._load(refund_id, for_update=True)
            if refund.status != RefundStatus.PROCESSING.value:
                return
            before = refund.snapshot()
            refund.status = RefundStatus.FAILED.value
            refund.gateway_refund_status = "error"
            refund.failure_reason = str(exc)[:1000]
            self.refund_repository.flush()
            self.record_transition(
                "refund_request", refund.id, "failed", Actor.system("refund_coordinator"), before, refund.snapshot()
            )
        prometheus_metrics.record_refund_outcome(RefundStatus.FAILED.value)
        self.logger.error(
            "Gateway refund submission failed",
            extra={"refund_request_id": refund_id, "status_code": exc.status_code, "error": str(exc)},
        )

    def _apply_gateway_response(self, refund_id: str, response: Dict[str, Any]) -> RefundRequest:
        with self.transaction():
            refund = self._load(refund_id, for_update=True)
            gateway_refund_id = response.get("id")
            if gateway_refund_id and not refund.gateway_refund_id:
                refund.gateway_refund_id = gateway_refund_id
            self._apply_status(
                refund,
                str(response.get("status") or ""),
                response.get("error_description"),
                Actor.system("refund_coordinator"),
            )
            self.refund_repository.flush()
        return refund

    @BaseService.measure_operation("apply_gateway_update")
    def apply_gateway_update(
        self,
        *,
        status: str,
        refund_id: Optional[str] = None,
        gateway_refund_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> RefundRequest:
        """
        Reconcile a refund with a status reported by the gateway (webhook).

        Re-reporting the current terminal status is a no-op; anything that
        would move a processed or rejected refund raises InvalidTransition.
        """
        with self.transaction():
            refund: Optional[RefundRequest] = None
            if gateway_refund_id:
                refund = self.refund_repository.get_by_gateway_refund_id(gateway_refund_id)
            if refund is None and refund_id:
                refund = self.refund_repository.get_by_id(refund_id, for_update=True)
            if refund is None:
                raise NotFoundException("Refund request not found", code="REFUND_NOT_FOUND")
            if gateway_refund_id and not refund.gateway_refund_id:
                refund.gateway_refund_id = gateway_refund_id
            self._apply_status(refund, status, failure_reason, Actor.system("gateway_webhook"))
            self.refund_repository.flush()
        return refund

    def _apply_status(
        self, refund: RefundRequest, gateway_status: str, failure_reason: Optional[str], actor: Actor
    ) -> None:
        target = _GATEWAY_STATUS_MAP.get(gateway_status)
        if target is None:
            # pending / created: the gateway is still working on it
            refund.gateway_refund_status = gateway_status or refund.gateway_refund_status
            return
        if refund.status == target:
            return
        if refund.is_terminal:
            raise InvalidTransitionException("refund_request", refund.status, target)

        refund.gateway_refund_status = gateway_status
        if target == RefundStatus.PROCESSED.value:
            if refund.status == RefundStatus.FAILED.value:
                # The gateway settled a refund we had given up on.
                before = refund.snapshot()
                refund.status = RefundStatus.PROCESSING.value
                self.record_transition("refund_request", refund.id, "reopened", actor, before, refund.snapshot())
            self._finalize(refund, actor)
            return

        if not refund.can_transition_to(RefundStatus.FAILED.value):
            raise InvalidTransitionException("refund_request", refund.status, target)
        before = refund.snapshot()
        refund.status = RefundStatus.FAILED.value
        refund.failure_reason = (failure_reason or "Refund failed at the payment gateway")[:1000]
        self.record_transition("refund_request", refund.id, "failed", actor, before, refund.snapshot())
        prometheus_metrics.record_refund_outcome(RefundStatus.FAILED.value)

    def _finalize(self, refund: RefundRequest, actor: Actor) -> None:
        """Processed: move the money on the payment and release the booking."""
        if not refund.can_transition_to(RefundStatus.PROCESSED.value):
            raise InvalidTransitionException("refund_request", refund.status, RefundStatus.PROCESSED.value)

        payment = self.payment_repository.get_by_id(refund.payment_id, for_update=True)
        if payment is None:
            raise InconsistentStateException("Refund without a payment", details={"refund_request_id": refund.id})

        refunded_total = _money(payment.refund_amount or 0) + _money(refund.amount)
        if refunded_total > _money(payment.amount):
            self.logger.critical(
                "Refund would exceed captured amount",
                extra={
                    "alert": True,
                    "refund_request_id": refund.id,
                    "payment_id": payment.id,
                    "captured": str(payment.amount),
                    "refunded_total": str(refunded_total),
                },
            )
            raise InconsistentStateException(
                "Refund total would exceed the captured amount",
                details={"refund_request_id": refund.id, "payment_id": payment.id},
            )

        now = self._now_fn()
        refund_before = refund.snapshot()
        refund.status = RefundStatus.PROCESSED.value
        refund.processed_at = now
        refund.failure_reason = None
        self.record_transition("refund_request", refund.id, "processed", actor, refund_before, refund.snapshot())

        payment_before = payment.snapshot()
        payment.refund_amount = refunded_total
        payment.refunded_at = now
        if refunded_total == _money(payment.amount) and can_advance(payment.status, PaymentStatus.REFUNDED.value):
            payment.status = PaymentStatus.REFUNDED.value
        self.record_transition("payment", payment.id, "refunded", actor, payment_before, payment.snapshot())

        booking_id = refund.booking_id or payment.booking_id
        booking = self.booking_repository.get_by_id(booking_id, for_update=True) if booking_id else None
        if booking is not None and booking.status == BookingStatus.CONFIRMED.value:
            booking_before = booking.snapshot()
            booking.cancel(actor.id, actor.role.value, reason=f"Refund {refund.id} processed", at=now)
            self.record_transition("booking", booking.id, "cancelled", actor, booking_before, booking.snapshot())

        prometheus_metrics.record_refund_outcome(RefundStatus.PROCESSED.value)
        self.logger.info(
            "Refund processed",
            extra={"refund_request_id": refund.id, "payment_id": payment.id, "amount": str(refund.amount)},
        )

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def process_refund(self, refund_id: str) -> RefundRequest:
        """Drive a refund forward from whatever state it is in (outbox handler)."""
        refund = self._load(refund_id)
        if refund.is_terminal:
            return refund
        system = Actor.system("refund_coordinator")
        if refund.status == RefundStatus.PENDING.value:
            if not refund.is_automatic:
                # Customer requests wait for an admin decision.
                return refund
            return self.approve_refund(refund_id, system, note="Approved automatically")
        if refund.status == RefundStatus.FAILED.value:
            return self.retry_refund(refund_id, system)
        return self.dispatch(refund_id)

    @BaseService.measure_operation("poll_processing_refunds")
    def poll_processing_refunds(self, limit: Optional[int] = None) -> int:
        """Ask the gateway about refunds it acknowledged but has not settled; returns how many settled."""
        batch = self.refund_repository.list_processing_awaiting_gateway(
            self._now_fn(), limit=limit or settings.refund_poll_batch_size
        )
        settled = 0
        for refund in batch:
            try:
                result = self.dispatch(refund.id)
            except GatewayException as exc:
                self.logger.warning(
                    "Refund poll deferred",
                    extra={"refund_request_id": refund.id, "error": exc.message},
                )
                continue
            if result.is_terminal:
                settled += 1
        return settled
