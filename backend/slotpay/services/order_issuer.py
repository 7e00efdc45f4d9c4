# backend/slotpay/services/order_issuer.py
"""
Order Issuer for SlotPay

Claims a slot and opens a payment order for it:

1. Validate the service, the provider and the requested interval.
2. In one short transaction: bump the provider's slot_version (serialises
   claimers per provider), release expired holds, re-check overlap, then
   write the pending booking, the payment and the reservation hold.
3. Commit, and only then ask the gateway for an order.
4. Store the gateway order id, or undo the claim if the gateway failed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Callable, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    ConflictException,
    GatewayException,
    NotFoundException,
    RepositoryException,
    SlotConflictException,
    ValidationException,
)
from ..core.slot_claim import slot_claim
from ..core.timezone_utils import ensure_utc, utc_now
from ..core.ulid_helper import generate_ulid
from ..integrations.payment_gateway_client import PaymentGatewayClient, PaymentGatewayError
from ..models.booking import Booking, BookingStatus
from ..models.payment import Payment, PaymentStatus
from ..models.provider import Provider, Service
from ..models.slot_reservation import SlotReservation
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..principal import Actor
from ..repositories.factory import RepositoryFactory
from .availability_resolver import validate_interval
from .base import BaseService
from .booking_ledger import BookingLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedOrder:
    gateway_order_id: str
    amount: Decimal
    currency: str
    booking_id: str
    payment_id: str
    receipt: str
    key_id: str
    reservation_expires_at: Optional[datetime]
    replayed: bool = False


@dataclass(frozen=True)
class _Claim:
    booking_id: str
    payment_id: str
    receipt: str
    amount: Decimal
    currency: str
    expires_at: datetime


class OrderIssuer(BaseService):
    """Turns a requested start time into a held slot plus a gateway order."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayClient,
        *,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        super().__init__(db)
        self.gateway = gateway
        self._now_fn = now_fn
        self.provider_repository = RepositoryFactory.create_provider_repository(db)
        self.service_repository = RepositoryFactory.create_service_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.reservation_repository = RepositoryFactory.create_reservation_repository(db)
        self.booking_ledger = BookingLedger(db, gateway, now_fn=now_fn)

    @BaseService.measure_operation("issue_order")
    def issue_order(
        self,
        customer_id: str,
        provider_id: str,
        service_id: str,
        requested_start: datetime,
        *,
        notes: Optional[str] = None,
        request_token: Optional[str] = None,
    ) -> IssuedOrder:
        """
        Hold the slot and open a gateway order for the service price.

        Raises:
            ValidationException: bad service/provider/interval
            SlotConflictException: the interval overlaps a live hold or confirmed booking
            GatewayException: the gateway could not open the order (claim is undone)
        """
        if requested_start.tzinfo is None:
            raise ValidationException(
                "Requested start must carry a UTC offset", code="NAIVE_DATETIME"
            )

        if request_token:
            existing = self.payment_repository.get_by_request_token(request_token)
            if existing is not None:
                return self._replay(existing, customer_id)

        provider, service = self._load_offering(provider_id, service_id)
        start_at = ensure_utc(requested_start)
        end_at = start_at + timedelta(minutes=service.duration_minutes)
        now = ensure_utc(self._now_fn())
        validate_interval(provider, start_at, end_at, now)

        with slot_claim(provider.id, start_at, end_at) as acquired:
            if not acquired:
                prometheus_metrics.record_slot_claim("conflict")
                raise SlotConflictException(
                    details={"provider_id": provider.id, "start_at": start_at.isoformat()}
                )
            try:
                claim = self._claim_slot(
                    customer_id, provider, service, start_at, end_at, now, notes, request_token
                )
            except RepositoryException:
                # Lost a race on the request token: the other call owns the order.
                if request_token:
                    existing = self.payment_repository.get_by_request_token(request_token)
                    if existing is not None:
                        return self._replay(existing, customer_id)
                raise

        prometheus_metrics.record_slot_claim("claimed")
        return self._open_gateway_order(claim, provider, service, customer_id)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _load_offering(self, provider_id: str, service_id: str) -> Tuple[Provider, Service]:
        service = self.service_repository.get_by_id(service_id)
        if service is None or not service.is_active:
            raise ValidationException("Service is not available", code="SERVICE_UNAVAILABLE")
        if service.provider_id != provider_id:
            raise ValidationException(
                "Service does not belong to this provider", code="SERVICE_PROVIDER_MISMATCH"
            )
        if Decimal(service.price) <= 0:
            raise ValidationException("Service has no payable price", code="SERVICE_NOT_PAYABLE")
        provider = self.provider_repository.get_active(provider_id)
        if provider is None:
            raise ValidationException("Provider is not accepting bookings", code="PROVIDER_INACTIVE")
        return provider, service

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def _claim_slot(
        self,
        customer_id: str,
        provider: Provider,
        service: Service,
        start_at: datetime,
        end_at: datetime,
        now: datetime,
        notes: Optional[str],
        request_token: Optional[str],
    ) -> _Claim:
        actor = Actor.customer(customer_id)
        buffer = timedelta(minutes=provider.buffer_minutes or 0)
        with self.transaction():
            if not self.provider_repository.claim_provider(provider.id):
                raise NotFoundException("Provider not found", code="PROVIDER_NOT_FOUND")
            self.booking_ledger.purge_expired_holds(now, provider_id=provider.id)

            overlapping = self.booking_repository.find_overlapping(
                provider.id, start_at - buffer, end_at + buffer
            )
            if overlapping:
                prometheus_metrics.record_slot_claim("conflict")
                raise SlotConflictException(
                    details={
                        "provider_id": provider.id,
                        "start_at": start_at.isoformat(),
                        "end_at": end_at.isoformat(),
                    }
                )

            booking = Booking(
                id=generate_ulid(),
                customer_id=customer_id,
                provider_id=provider.id,
                service_id=service.id,
                start_at=start_at,
                end_at=end_at,
                duration_minutes=service.duration_minutes,
                service_name=service.name,
                price=service.price,
                currency=service.currency,
                status=BookingStatus.PENDING.value,
                notes=notes,
            )
            self.booking_repository.add(booking)

            payment = Payment(
                id=generate_ulid(),
                customer_id=customer_id,
                provider_id=provider.id,
                receipt=f"{settings.receipt_prefix}{booking.id}"[:40],
                request_token=request_token,
                amount=service.price,
                currency=service.currency,
                status=PaymentStatus.CREATED.value,
            )
            self.payment_repository.add(payment)

            expires_at = now + timedelta(minutes=settings.reservation_ttl_minutes)
            reservation = SlotReservation(
                provider_id=provider.id,
                start_at=start_at,
                end_at=end_at,
                booking_id=booking.id,
                payment_id=payment.id,
                customer_id=customer_id,
                expires_at=expires_at,
            )
            if not self.reservation_repository.insert_hold(reservation):
                prometheus_metrics.record_slot_claim("conflict")
                raise SlotConflictException(details={"provider_id": provider.id})

            self.record_transition("booking", booking.id, "created", actor, None, booking.snapshot())
            self.record_transition("payment", payment.id, "created", actor, None, payment.snapshot())

            claim = _Claim(
                booking_id=booking.id,
                payment_id=payment.id,
                receipt=payment.receipt,
                amount=Decimal(payment.amount),
                currency=payment.currency,
                expires_at=expires_at,
            )

        self.logger.info(
            "Slot claimed",
            extra={
                "provider_id": provider.id,
                "booking_id": claim.booking_id,
                "payment_id": claim.payment_id,
                "expires_at": claim.expires_at.isoformat(),
            },
        )
        return claim

    # ------------------------------------------------------------------
    # Gateway order
    # ------------------------------------------------------------------

    def _open_gateway_order(
        self, claim: _Claim, provider: Provider, service: Service, customer_id: str
    ) -> IssuedOrder:
        try:
            order = self.gateway.create_order(
                amount=claim.amount,
                currency=claim.currency,
                receipt=claim.receipt,
                notes={"booking_id": claim.booking_id, "payment_id": claim.payment_id},
            )
        except PaymentGatewayError as exc:
            self._abandon_claim(claim, f"Gateway order failed: {exc}")
            raise GatewayException(
                "Payment order could not be created",
                upstream_status=exc.status_code,
                details={"retryable": exc.retryable},
            ) from exc

        order_id = str(order["id"])
        with self.transaction():
            payment = self.payment_repository.get_by_id(claim.payment_id, for_update=True)
            if payment is None:
                raise NotFoundException("Payment disappeared while opening order")
            before = payment.snapshot()
            payment.gateway_order_id = order_id
            payment.status = PaymentStatus.PENDING.value
            reservation = self.reservation_repository.get_by_payment_id(claim.payment_id)
            if reservation is not None:
                reservation.gateway_order_id = order_id
            self.payment_repository.flush()
            self.record_transition(
                "payment", payment.id, "order_opened", Actor.customer(customer_id), before, payment.snapshot()
            )

        self.logger.info(
            "Gateway order opened",
            extra={"payment_id": claim.payment_id, "gateway_order_id": order_id, "service_id": service.id},
        )
        return IssuedOrder(
            gateway_order_id=order_id,
            amount=claim.amount,
            currency=claim.currency,
            booking_id=claim.booking_id,
            payment_id=claim.payment_id,
            receipt=claim.receipt,
            key_id=self.gateway.key_id,
            reservation_expires_at=claim.expires_at,
        )

    def _abandon_claim(self, claim: _Claim, reason: str) -> None:
        """Undo a claim whose order could not be opened: free the slot, fail the payment."""
        system = Actor.system("order_issuer")
        with self.transaction():
            reservation = self.reservation_repository.get_by_payment_id(claim.payment_id)
            if reservation is not None:
                self.reservation_repository.delete_entity(reservation)
            booking = self.booking_repository.get_by_id(claim.booking_id)
            if booking is not None and booking.status == BookingStatus.PENDING.value:
                self.record_transition("booking", booking.id, "discarded", system, booking.snapshot(), None)
                self.booking_repository.delete_entity(booking)
            payment = self.payment_repository.get_by_id(claim.payment_id)
            if payment is not None:
                before = payment.snapshot()
                payment.status = PaymentStatus.FAILED.value
                payment.failure_reason = reason[:1000]
                # Free the token so the client can retry with the same key.
                payment.request_token = None
                self.payment_repository.flush()
                self.record_transition("payment", payment.id, "failed", system, before, payment.snapshot())

        prometheus_metrics.record_slot_claim("released")
        self.logger.warning(
            "Slot claim abandoned after gateway failure",
            extra={"booking_id": claim.booking_id, "payment_id": claim.payment_id, "reason": reason},
        )

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def _replay(self, payment: Payment, customer_id: str) -> IssuedOrder:
        """Same request token again: hand back the original order."""
        if payment.customer_id != customer_id:
            raise ConflictException(
                "Idempotency key was already used by another request", code="IDEMPOTENCY_KEY_REUSED"
            )
        if not payment.gateway_order_id:
            raise ConflictException(
                "The original order is still being created", code="ORDER_IN_PROGRESS"
            )

        reservation = self.reservation_repository.get_by_payment_id(payment.id)
        booking_id = reservation.booking_id if reservation is not None else payment.booking_id
        if booking_id is None:
            raise ConflictException(
                "The original order's slot hold has expired", code="ORDER_EXPIRED"
            )

        prometheus_metrics.record_slot_claim("replayed")
        return IssuedOrder(
            gateway_order_id=payment.gateway_order_id,
            amount=Decimal(payment.amount),
            currency=payment.currency,
            booking_id=booking_id,
            payment_id=payment.id,
            receipt=payment.receipt,
            key_id=self.gateway.key_id,
            reservation_expires_at=ensure_utc(reservation.expires_at) if reservation is not None else None,
            replayed=True,
        )
