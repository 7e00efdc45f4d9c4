# backend/slotpay/api/dependencies/__init__.py
"""
FastAPI dependencies shared by the v1 routes.
"""

from .actor import get_current_actor, require_admin
from .database import get_db
from .services import (
    get_availability_resolver,
    get_booking_ledger,
    get_clock,
    get_order_issuer,
    get_payment_gateway,
    get_payment_verifier,
    get_refund_coordinator,
    get_webhook_service,
)

__all__ = [
    "get_availability_resolver",
    "get_booking_ledger",
    "get_clock",
    "get_current_actor",
    "get_db",
    "get_order_issuer",
    "get_payment_gateway",
    "get_payment_verifier",
    "get_refund_coordinator",
    "get_webhook_service",
    "require_admin",
]
