# backend/slotpay/api/dependencies/services.py
"""
Service layer dependencies.

Each request gets services bound to its own session; the gateway client
and the clock are shared and can be overridden in tests.
"""

from datetime import datetime
from functools import lru_cache
from typing import Callable

from fastapi import Depends
from sqlalchemy.orm import Session

from ...core.config import is_running_tests, settings
from ...core.timezone_utils import utc_now
from ...integrations.payment_gateway_client import FakePaymentGatewayClient, PaymentGatewayClient
from ...services.availability_resolver import AvailabilityResolver
from ...services.booking_ledger import BookingLedger
from ...services.gateway_webhook_service import GatewayWebhookService
from ...services.order_issuer import OrderIssuer
from ...services.payment_verifier import PaymentVerifier
from ...services.refund_coordinator import RefundCoordinator
from .database import get_db


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGatewayClient:
    """Process-wide gateway client (the in-memory fake when configured or under pytest)."""
    if settings.gateway_fake or is_running_tests():
        return FakePaymentGatewayClient(key_id=settings.gateway_key_id or "rzp_test_fake")
    return PaymentGatewayClient(
        key_id=settings.gateway_key_id,
        key_secret=settings.gateway_key_secret,
        base_url=settings.gateway_base_url,
        timeout=settings.gateway_timeout_seconds,
    )


def get_clock() -> Callable[[], datetime]:
    return utc_now


def get_availability_resolver(
    db: Session = Depends(get_db), clock: Callable[[], datetime] = Depends(get_clock)
) -> AvailabilityResolver:
    return AvailabilityResolver(db, now_fn=clock)


def get_order_issuer(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> OrderIssuer:
    return OrderIssuer(db, gateway, now_fn=clock)


def get_payment_verifier(
    db: Session = Depends(get_db), clock: Callable[[], datetime] = Depends(get_clock)
) -> PaymentVerifier:
    return PaymentVerifier(db, now_fn=clock)


def get_webhook_service(
    db: Session = Depends(get_db), clock: Callable[[], datetime] = Depends(get_clock)
) -> GatewayWebhookService:
    return GatewayWebhookService(db, now_fn=clock)


def get_booking_ledger(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> BookingLedger:
    return BookingLedger(db, gateway, now_fn=clock)


def get_refund_coordinator(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> RefundCoordinator:
    return RefundCoordinator(db, gateway, now_fn=clock)
