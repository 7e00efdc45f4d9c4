"""Reservation hold on a provider slot while payment is in flight."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from slotpay.core.timezone_utils import ensure_utc
from slotpay.database import Base


class SlotReservation(Base):
    """
    TTL-bounded claim on (provider_id, start_at, end_at).

    The unique key is the last line of defence against two holders of the
    same exact slot. The row is deleted when it is consumed by a confirmation
    or released on expiry, so the key is free again afterwards.
    """

    __tablename__ = "slot_reservations"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    provider_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("providers.id"), nullable=False, index=True
    )
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    booking_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    payment_id: Mapped[str] = mapped_column(String(26), nullable=False, unique=True)
    customer_id: Mapped[str] = mapped_column(String(26), nullable=False)
    gateway_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("provider_id", "start_at", "end_at", name="uq_slot_reservations_slot"),
    )

    __mapper_args__ = {"version_id_col": version}

    def is_live(self, now: datetime) -> bool:
        expires_at = ensure_utc(self.expires_at)
        return expires_at is not None and expires_at > ensure_utc(now)

    def __repr__(self) -> str:
        return (
            f"<SlotReservation {self.id} provider={self.provider_id} "
            f"{self.start_at}-{self.end_at} v{self.version}>"
        )
