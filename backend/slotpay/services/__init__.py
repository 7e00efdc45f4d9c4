# backend/slotpay/services/__init__.py
"""
Service layer for SlotPay.

Services own transactions; repositories only flush.
"""

from .availability_resolver import AvailabilityResolver, FreeInterval
from .base import BaseService
from .booking_ledger import BookingLedger, CancellationResult
from .gateway_webhook_service import GatewayWebhookService, WebhookOutcome
from .order_issuer import IssuedOrder, OrderIssuer
from .outbox_dispatcher import OutboxDispatcher
from .payment_verifier import PaymentVerifier, VerificationOutcome, VerificationResult
from .refund_coordinator import RefundCoordinator

__all__ = [
    "AvailabilityResolver",
    "BaseService",
    "BookingLedger",
    "CancellationResult",
    "FreeInterval",
    "GatewayWebhookService",
    "IssuedOrder",
    "OrderIssuer",
    "OutboxDispatcher",
    "PaymentVerifier",
    "RefundCoordinator",
    "VerificationOutcome",
    "VerificationResult",
    "WebhookOutcome",
]
