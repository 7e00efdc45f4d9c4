"""
Database models for SlotPay.

Importing this package registers every table on ``Base.metadata``.
"""

from .audit_log import AuditLog
from .booking import BLOCKING_STATUSES, Booking, BookingStatus
from .event_outbox import EventOutbox, EventOutboxStatus, OutboxEventType
from .payment import Payment, PaymentStatus
from .provider import Provider, Service
from .refund_request import RefundRequest, RefundStatus
from .slot_reservation import SlotReservation
from .webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "AuditLog",
    "BLOCKING_STATUSES",
    "Booking",
    "BookingStatus",
    "EventOutbox",
    "EventOutboxStatus",
    "OutboxEventType",
    "Payment",
    "PaymentStatus",
    "Provider",
    "RefundRequest",
    "RefundStatus",
    "Service",
    "SlotReservation",
    "WebhookEvent",
    "WebhookEventStatus",
]
