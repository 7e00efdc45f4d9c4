# backend/slotpay/repositories/factory.py
"""
Repository Factory for SlotPay

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from sqlalchemy.orm import Session

from .audit_repository import AuditRepository
from .booking_repository import BookingRepository
from .event_outbox_repository import EventOutboxRepository
from .payment_repository import PaymentRepository
from .provider_repository import ProviderRepository, ServiceRepository
from .refund_request_repository import RefundRequestRepository
from .reservation_repository import ReservationRepository
from .webhook_event_repository import WebhookEventRepository


class RepositoryFactory:
    """
    Factory class for creating repository instances.

    Centralizes repository creation so services never construct
    repositories directly.
    """

    @staticmethod
    def create_provider_repository(db: Session) -> ProviderRepository:
        return ProviderRepository(db)

    @staticmethod
    def create_service_repository(db: Session) -> ServiceRepository:
        return ServiceRepository(db)

    @staticmethod
    def create_booking_repository(db: Session) -> BookingRepository:
        return BookingRepository(db)

    @staticmethod
    def create_reservation_repository(db: Session) -> ReservationRepository:
        return ReservationRepository(db)

    @staticmethod
    def create_payment_repository(db: Session) -> PaymentRepository:
        return PaymentRepository(db)

    @staticmethod
    def create_refund_request_repository(db: Session) -> RefundRequestRepository:
        return RefundRequestRepository(db)

    @staticmethod
    def create_audit_repository(db: Session) -> AuditRepository:
        return AuditRepository(db)

    @staticmethod
    def create_event_outbox_repository(db: Session) -> EventOutboxRepository:
        return EventOutboxRepository(db)

    @staticmethod
    def create_webhook_event_repository(db: Session) -> WebhookEventRepository:
        return WebhookEventRepository(db)
