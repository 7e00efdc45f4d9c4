"""
Payment model for gateway orders.

One Payment row per gateway order. booking_id stays NULL until the payment
is verified and its booking confirmed; the booking side is resolved through
that indexed column rather than an ORM relationship.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from slotpay.database import Base


class PaymentStatus(str, Enum):
    CREATED = "created"
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    FAILED = "failed"


# Position in the forward-only lattice. FAILED sits beside the pre-capture states.
_STATUS_RANK: Dict[str, int] = {
    PaymentStatus.CREATED.value: 0,
    PaymentStatus.PENDING.value: 1,
    PaymentStatus.AUTHORIZED.value: 2,
    PaymentStatus.CAPTURED.value: 3,
    PaymentStatus.REFUNDED.value: 4,
}


def can_advance(current: str, target: str) -> bool:
    """
    True when moving current -> target respects the payment lattice.

    Staying put is not an advance. FAILED is reachable only before capture,
    and nothing leaves FAILED except a late capture reported by the gateway.
    """
    if current == target:
        return False
    if target == PaymentStatus.FAILED.value:
        return _STATUS_RANK.get(current, 99) < _STATUS_RANK[PaymentStatus.CAPTURED.value]
    if current == PaymentStatus.FAILED.value:
        return target == PaymentStatus.CAPTURED.value
    return _STATUS_RANK[target] > _STATUS_RANK[current]


class Payment(Base):
    """Money collected (or to be collected) for a single booking attempt."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id: Mapped[Optional[str]] = mapped_column(
        String(26), ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True, index=True
    )
    customer_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)

    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    receipt: Mapped[str] = mapped_column(String(40), nullable=False)
    request_token: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.CREATED.value, index=True
    )
    refund_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Outcome recorded when the capture could not be turned into a booking.
    verification_outcome: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    # Bumped by every refund staging; serialises the refund cap per payment.
    refund_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        CheckConstraint("refund_amount >= 0", name="ck_payments_refund_non_negative"),
        CheckConstraint("refund_amount <= amount", name="ck_payments_refund_within_amount"),
        CheckConstraint(
            "status IN ('created', 'pending', 'authorized', 'captured', 'refunded', 'failed')",
            name="ck_payments_status",
        ),
    )

    @property
    def refundable_amount(self) -> Decimal:
        return Decimal(self.amount) - Decimal(self.refund_amount or 0)

    @property
    def is_captured(self) -> bool:
        return self.status in (PaymentStatus.CAPTURED.value, PaymentStatus.REFUNDED.value)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "booking_id": self.booking_id,
            "gateway_payment_id": self.gateway_payment_id,
            "refund_amount": str(self.refund_amount) if self.refund_amount is not None else None,
        }

    def __repr__(self) -> str:
        return f"<Payment {self.id} order={self.gateway_order_id} {self.status} {self.amount}>"
