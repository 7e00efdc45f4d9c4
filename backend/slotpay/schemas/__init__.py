# backend/slotpay/schemas/__init__.py
"""
Pydantic schemas for the SlotPay API.

Request models forbid unknown fields; gateway payloads are only parsed after
their signatures check out.
"""

from .availability import AvailabilityResponse, FreeIntervalResponse
from .booking import (
    BookingCancelRequest,
    BookingCancelResponse,
    BookingListResponse,
    BookingRejectRequest,
    BookingResponse,
)
from .order import OrderCreateRequest, OrderResponse
from .payment import (
    GatewayWebhookEnvelope,
    PaymentVerificationRequest,
    PaymentVerificationResponse,
    WebhookAckResponse,
)
from .refund import RefundCreateRequest, RefundListResponse, RefundRejectRequest, RefundResponse

__all__ = [
    "AvailabilityResponse",
    "BookingCancelRequest",
    "BookingCancelResponse",
    "BookingListResponse",
    "BookingRejectRequest",
    "BookingResponse",
    "FreeIntervalResponse",
    "GatewayWebhookEnvelope",
    "OrderCreateRequest",
    "OrderResponse",
    "PaymentVerificationRequest",
    "PaymentVerificationResponse",
    "RefundCreateRequest",
    "RefundListResponse",
    "RefundRejectRequest",
    "RefundResponse",
    "WebhookAckResponse",
]
