# backend/slotpay/models/provider.py
"""
Provider and Service models.

A provider publishes a recurring weekly schedule in local wall-clock time at
a fixed UTC offset. Schedule rows are stored as JSON:

    recurring_schedule = [
        {"day_of_week": 1, "slots": [{"start": "09:00", "end": "17:00", "is_active": true}]},
    ]
    schedule_exceptions = [
        {"date": "2026-01-26", "is_available": false, "reason": "Holiday"},
        {"date": "2026-01-27", "is_available": true, "slots": [{"start": "10:00", "end": "12:00"}]},
    ]

day_of_week uses 0 = Sunday ... 6 = Saturday.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.types import JSON
import ulid

from ..database import Base

# India Standard Time; the marketplace's home offset.
DEFAULT_UTC_OFFSET_MINUTES = 330


class Provider(Base):
    """Bookable provider with a weekly availability template."""

    __tablename__ = "providers"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    display_name = Column(String(200), nullable=False)
    utc_offset_minutes = Column(Integer, nullable=False, default=DEFAULT_UTC_OFFSET_MINUTES)
    recurring_schedule = Column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"),
        nullable=False,
        default=list,
    )
    schedule_exceptions = Column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"),
        nullable=False,
        default=list,
    )
    buffer_minutes = Column(Integer, nullable=False, default=0)
    advance_booking_days = Column(Integer, nullable=False, default=30)
    min_notice_hours = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    # Bumped by every slot claim; the conditional write serialises claimers per provider.
    slot_version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("buffer_minutes >= 0", name="ck_providers_buffer_non_negative"),
        CheckConstraint("advance_booking_days >= 1", name="ck_providers_advance_window"),
        CheckConstraint(
            "utc_offset_minutes BETWEEN -720 AND 840", name="ck_providers_utc_offset_range"
        ),
    )

    def __repr__(self) -> str:
        return f"<Provider {self.id} {self.display_name!r} offset={self.utc_offset_minutes}>"


class Service(Base):
    """A priced, fixed-duration offering of one provider."""

    __tablename__ = "services"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    provider_id = Column(String(26), ForeignKey("providers.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    duration_minutes = Column(Integer, nullable=False, default=60)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_services_duration_positive"),
        CheckConstraint("price >= 0", name="ck_services_price_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Service {self.id} {self.name!r} {self.price} {self.currency}/{self.duration_minutes}m>"
