"""Refund requests and their approval/processing workflow state."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from slotpay.database import Base


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    REJECTED = "rejected"
    FAILED = "failed"


TERMINAL_REFUND_STATUSES = frozenset({RefundStatus.PROCESSED.value, RefundStatus.REJECTED.value})

# Statuses whose amount counts against what is still refundable.
COMMITTED_REFUND_STATUSES = (
    RefundStatus.PENDING.value,
    RefundStatus.PROCESSING.value,
    RefundStatus.PROCESSED.value,
    RefundStatus.FAILED.value,
)

REFUND_TRANSITIONS: Dict[str, frozenset[str]] = {
    RefundStatus.PENDING.value: frozenset(
        {RefundStatus.PROCESSING.value, RefundStatus.REJECTED.value}
    ),
    RefundStatus.PROCESSING.value: frozenset(
        {RefundStatus.PROCESSED.value, RefundStatus.FAILED.value}
    ),
    RefundStatus.FAILED.value: frozenset({RefundStatus.PROCESSING.value}),
    RefundStatus.PROCESSED.value: frozenset(),
    RefundStatus.REJECTED.value: frozenset(),
}


class RefundRequest(Base):
    """A request to return part or all of a captured payment."""

    __tablename__ = "refund_requests"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    payment_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("payments.id"), nullable=False, index=True
    )
    booking_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True, index=True)
    requested_by: Mapped[str] = mapped_column(String(64), nullable=False)
    requested_by_role: Mapped[str] = mapped_column(String(20), nullable=False)
    is_automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RefundStatus.PENDING.value, index=True
    )

    # Admin decision
    admin_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    admin_action: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    admin_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Gateway side
    gateway_refund_id: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, nullable=True
    )
    gateway_refund_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_refund_requests_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'processed', 'rejected', 'failed')",
            name="ck_refund_requests_status",
        ),
        CheckConstraint(
            "status != 'rejected' OR admin_reason IS NOT NULL",
            name="ck_refund_requests_rejection_reason",
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REFUND_STATUSES

    @property
    def idempotency_key(self) -> str:
        """Key sent to the gateway; stable across approve/retry attempts."""
        return self.id

    @property
    def admin_response(self) -> Optional[Dict[str, Any]]:
        if not self.admin_action:
            return None
        return {
            "admin_id": self.admin_id,
            "action": self.admin_action,
            "reason": self.admin_reason,
            "responded_at": self.responded_at,
        }

    def can_transition_to(self, target: str) -> bool:
        return target in REFUND_TRANSITIONS.get(self.status, frozenset())

    def snapshot(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "admin_action": self.admin_action,
            "admin_reason": self.admin_reason,
            "gateway_refund_id": self.gateway_refund_id,
            "gateway_refund_status": self.gateway_refund_status,
            "failure_reason": self.failure_reason,
        }

    def __repr__(self) -> str:
        return f"<RefundRequest {self.id} payment={self.payment_id} {self.status} {self.amount}>"
