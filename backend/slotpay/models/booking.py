# backend/slotpay/models/booking.py
"""
Booking model.

A booking holds the half-open interval [start_at, end_at) in UTC. It is
created PENDING while payment is in flight and becomes CONFIRMED only once
the payment is verified; payment_id is set at that moment and never before.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.sql import func
import ulid

from ..database import Base


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"  # Slot held, payment in flight
    CONFIRMED = "confirmed"  # Paid and committed
    COMPLETED = "completed"  # Service delivered
    CANCELLED = "cancelled"  # Cancelled after confirmation
    REJECTED = "rejected"  # Declined or lost its slot before confirmation


class ModificationStatus(str, Enum):
    """State of a proposed reschedule."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Bookings whose time may still be moved.
MODIFIABLE_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)

# Statuses that occupy the provider's calendar.
BLOCKING_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)

# Allowed forward moves; anything else is an invalid transition.
BOOKING_TRANSITIONS: Dict[str, frozenset[str]] = {
    BookingStatus.PENDING.value: frozenset(
        {BookingStatus.CONFIRMED.value, BookingStatus.REJECTED.value}
    ),
    BookingStatus.CONFIRMED.value: frozenset(
        {BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value}
    ),
    BookingStatus.COMPLETED.value: frozenset(),
    BookingStatus.CANCELLED.value: frozenset(),
    BookingStatus.REJECTED.value: frozenset(),
}


class Booking(Base):
    """Customer booking of one provider service for a fixed interval."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    customer_id = Column(String(26), nullable=False, index=True)
    provider_id = Column(String(26), ForeignKey("providers.id"), nullable=False)
    service_id = Column(String(26), ForeignKey("services.id"), nullable=False)

    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    # Service snapshot
    service_name = Column(String(200), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    notes = Column(Text, nullable=True)

    # Set only when confirmed; resolved by lookup, no ORM back-pointer.
    payment_id = Column(String(26), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    cancelled_by = Column(String(64), nullable=True)
    cancelled_by_role = Column(String(20), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    # Latest reschedule proposal; one open proposal at a time.
    modification_status = Column(String(20), nullable=True)
    proposed_start_at = Column(DateTime(timezone=True), nullable=True)
    proposed_end_at = Column(DateTime(timezone=True), nullable=True)
    modification_requested_by = Column(String(64), nullable=True)
    modification_requested_by_role = Column(String(20), nullable=True)
    modification_reason = Column(Text, nullable=True)
    modification_requested_at = Column(DateTime(timezone=True), nullable=True)
    modification_responded_by = Column(String(64), nullable=True)
    modification_responded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_bookings_provider_window", "provider_id", "start_at", "end_at"),
        CheckConstraint("end_at > start_at", name="ck_bookings_interval_order"),
        CheckConstraint("price >= 0", name="ck_bookings_price_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'completed', 'cancelled', 'rejected')",
            name="ck_bookings_status",
        ),
        CheckConstraint(
            "status NOT IN ('confirmed', 'completed') OR payment_id IS NOT NULL",
            name="ck_bookings_paid_when_confirmed",
        ),
        CheckConstraint(
            "modification_status IS NULL OR modification_status IN ('pending', 'approved', 'rejected')",
            name="ck_bookings_modification_status",
        ),
    )

    def can_transition_to(self, target: str) -> bool:
        return target in BOOKING_TRANSITIONS.get(self.status, frozenset())

    def confirm(self, payment_id: str, at: Optional[datetime] = None) -> None:
        self.status = BookingStatus.CONFIRMED.value
        self.payment_id = payment_id
        self.confirmed_at = at or datetime.now(timezone.utc)

    def complete(self, at: Optional[datetime] = None) -> None:
        self.status = BookingStatus.COMPLETED.value
        self.completed_at = at or datetime.now(timezone.utc)

    def cancel(
        self,
        cancelled_by: Optional[str],
        role: Optional[str],
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        self.status = BookingStatus.CANCELLED.value
        self.cancelled_by = cancelled_by
        self.cancelled_by_role = role
        self.cancellation_reason = reason
        self.cancelled_at = at or datetime.now(timezone.utc)

    def reject(self, reason: str) -> None:
        self.status = BookingStatus.REJECTED.value
        self.rejection_reason = reason

    @property
    def has_open_modification(self) -> bool:
        return self.modification_status == ModificationStatus.PENDING.value

    def propose_modification(
        self,
        start_at: datetime,
        end_at: datetime,
        requested_by: str,
        role: str,
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        self.modification_status = ModificationStatus.PENDING.value
        self.proposed_start_at = start_at
        self.proposed_end_at = end_at
        self.modification_requested_by = requested_by
        self.modification_requested_by_role = role
        self.modification_reason = reason
        self.modification_requested_at = at or datetime.now(timezone.utc)
        self.modification_responded_by = None
        self.modification_responded_at = None

    def settle_modification(self, approved: bool, responded_by: str, at: Optional[datetime] = None) -> None:
        """Close the open proposal; an approval moves the booking to the proposed interval."""
        if approved:
            self.start_at = self.proposed_start_at
            self.end_at = self.proposed_end_at
            self.modification_status = ModificationStatus.APPROVED.value
        else:
            self.modification_status = ModificationStatus.REJECTED.value
        self.modification_responded_by = responded_by
        self.modification_responded_at = at or datetime.now(timezone.utc)

    def snapshot(self) -> Dict[str, Any]:
        """Audit-friendly view of the mutable fields."""
        return {
            "status": self.status,
            "payment_id": self.payment_id,
            "cancelled_by": self.cancelled_by,
            "cancellation_reason": self.cancellation_reason,
            "rejection_reason": self.rejection_reason,
            "start_at": _iso(self.start_at),
            "end_at": _iso(self.end_at),
            "modification_status": self.modification_status,
            "proposed_start_at": _iso(self.proposed_start_at),
        }

    def __repr__(self) -> str:
        return f"<Booking {self.id} {self.status} {self.start_at}-{self.end_at}>"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
