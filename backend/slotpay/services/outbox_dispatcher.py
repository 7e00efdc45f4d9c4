# backend/slotpay/services/outbox_dispatcher.py
"""
Delivers due outbox events to their handlers.

Each event is handled and marked in its own commit, so one poisoned event
never holds back the rest of the batch.
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import DomainException, GatewayException
from ..core.timezone_utils import utc_now
from ..integrations.payment_gateway_client import PaymentGatewayClient
from ..models.event_outbox import EventOutbox, OutboxEventType
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .refund_coordinator import RefundCoordinator

logger = logging.getLogger(__name__)

_REFUND_EVENTS = (OutboxEventType.COMPENSATING_REFUND, OutboxEventType.PROCESS_REFUND)


class OutboxDispatcher(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayClient,
        *,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        super().__init__(db)
        self._now_fn = now_fn
        self.outbox_repository = RepositoryFactory.create_event_outbox_repository(db)
        self.refund_coordinator = RefundCoordinator(db, gateway, now_fn=now_fn)

    @BaseService.measure_operation("dispatch_outbox")
    def dispatch_due(self, limit: Optional[int] = None) -> int:
        """Handle due events; returns how many were delivered."""
        now = self._now_fn()
        with self.transaction():
            due = self.outbox_repository.fetch_due(limit or settings.outbox_batch_size, now=now)
            event_ids = [event.id for event in due]

        delivered = 0
        for event_id in event_ids:
            if self._deliver(event_id):
                delivered += 1
        return delivered

    def _deliver(self, event_id: str) -> bool:
        event = self.db.get(EventOutbox, event_id)
        if event is None:
            return False
        try:
            self._handle(event)
        except GatewayException as exc:
            self._reschedule(event_id, exc)
            return False
        except DomainException as exc:
            self.logger.error(
                "Outbox event failed permanently",
                extra={"outbox_event_id": event_id, "event_type": event.event_type, "error": exc.message},
            )
            with self.transaction():
                event = self.db.get(EventOutbox, event_id)
                if event is not None:
                    event.mark_failed(exc.message)
            return False

        with self.transaction():
            event = self.db.get(EventOutbox, event_id)
            if event is not None:
                event.mark_sent()
        return True

    def _handle(self, event: EventOutbox) -> None:
        if event.event_type in _REFUND_EVENTS:
            refund_id = (event.payload or {}).get("refund_request_id") or event.aggregate_id
            self.refund_coordinator.process_refund(refund_id)
            return
        raise DomainException(f"No handler for outbox event type {event.event_type}", code="UNHANDLED_EVENT")

    def _reschedule(self, event_id: str, exc: GatewayException) -> None:
        with self.transaction():
            event = self.db.get(EventOutbox, event_id)
            if event is None:
                return
            attempts = (event.attempt_count or 0) + 1
            if attempts >= settings.outbox_max_attempts or exc.details.get("retryable") is False:
                event.mark_failed(exc.message)
                self.logger.critical(
                    "Outbox event exhausted its retries",
                    extra={
                        "alert": True,
                        "outbox_event_id": event_id,
                        "aggregate_id": event.aggregate_id,
                        "attempts": attempts,
                    },
                )
                return
            delay = timedelta(seconds=settings.outbox_backoff_seconds * (2 ** (attempts - 1)))
            event.mark_retry(self._now_fn() + delay, exc.message)
            self.logger.warning(
                "Outbox event rescheduled",
                extra={"outbox_event_id": event_id, "attempts": attempts, "delay_seconds": delay.total_seconds()},
            )
