# backend/slotpay/models/event_outbox.py
"""
Transactional outbox.

Rows are written in the same transaction as the state change that needs
follow-up work (e.g. a compensating refund) and dispatched by a worker.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.types import JSON
import ulid

from slotpay.database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class EventOutboxStatus(str, Enum):
    """Lifecycle states for an outbox event."""

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class OutboxEventType:
    COMPENSATING_REFUND = "refund.compensate"
    PROCESS_REFUND = "refund.process"


class EventOutbox(Base):
    """Transactional outbox entry pending delivery."""

    __tablename__ = "event_outbox"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    event_type = Column(String(100), nullable=False, index=True)
    aggregate_id = Column(String(64), nullable=False, index=True)
    idempotency_key = Column(String(255), nullable=False, unique=True)
    payload = Column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"),
        nullable=False,
        default=dict,
    )
    status = Column(String(20), nullable=False, default=EventOutboxStatus.PENDING.value, index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)

    def mark_retry(self, next_attempt_at: datetime, error: str | None = None) -> None:
        """Schedule another delivery attempt."""
        self.status = EventOutboxStatus.PENDING.value
        self.attempt_count = (self.attempt_count or 0) + 1
        self.next_attempt_at = next_attempt_at
        if error:
            self.last_error = error[:1000]

    def mark_sent(self) -> None:
        self.status = EventOutboxStatus.SENT.value
        self.attempt_count = (self.attempt_count or 0) + 1
        self.next_attempt_at = None

    def mark_failed(self, error: str | None = None) -> None:
        """Give up; operators pick these up from the FAILED queue."""
        self.status = EventOutboxStatus.FAILED.value
        self.attempt_count = (self.attempt_count or 0) + 1
        if error:
            self.last_error = error[:1000]
