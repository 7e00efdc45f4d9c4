"""Booking request/response DTOs."""

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import AwareDatetime, Field

from ..core.timezone_utils import ensure_utc
from ..models.booking import Booking
from ._strict_base import StrictModel, StrictRequestModel


class BookingModificationResponse(StrictModel):
    status: str
    proposed_start_at: datetime
    proposed_end_at: datetime
    requested_by: str
    requested_by_role: str
    reason: Optional[str] = None
    requested_at: Optional[datetime] = None
    responded_by: Optional[str] = None
    responded_at: Optional[datetime] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> Optional["BookingModificationResponse"]:
        if booking.modification_status is None:
            return None
        return cls(
            status=booking.modification_status,
            proposed_start_at=ensure_utc(booking.proposed_start_at),
            proposed_end_at=ensure_utc(booking.proposed_end_at),
            requested_by=booking.modification_requested_by,
            requested_by_role=booking.modification_requested_by_role,
            reason=booking.modification_reason,
            requested_at=ensure_utc(booking.modification_requested_at),
            responded_by=booking.modification_responded_by,
            responded_at=ensure_utc(booking.modification_responded_at),
        )


class BookingResponse(StrictModel):
    id: str
    customer_id: str
    provider_id: str
    service_id: str
    service_name: str
    start_at: datetime
    end_at: datetime
    duration_minutes: int
    price: Decimal
    currency: str
    status: str
    payment_id: Optional[str] = None
    notes: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    modification: Optional[BookingModificationResponse] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        return cls(
            id=booking.id,
            customer_id=booking.customer_id,
            provider_id=booking.provider_id,
            service_id=booking.service_id,
            service_name=booking.service_name,
            start_at=ensure_utc(booking.start_at),
            end_at=ensure_utc(booking.end_at),
            duration_minutes=booking.duration_minutes,
            price=booking.price,
            currency=booking.currency,
            status=booking.status,
            payment_id=booking.payment_id,
            notes=booking.notes,
            confirmed_at=ensure_utc(booking.confirmed_at),
            completed_at=ensure_utc(booking.completed_at),
            cancelled_at=ensure_utc(booking.cancelled_at),
            cancellation_reason=booking.cancellation_reason,
            rejection_reason=booking.rejection_reason,
            modification=BookingModificationResponse.from_booking(booking),
        )


class BookingListResponse(StrictModel):
    items: List[BookingResponse]
    total: int


class BookingCancelRequest(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=1000)


class BookingRejectRequest(StrictRequestModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class BookingCancelResponse(StrictModel):
    booking: BookingResponse
    refund_request_id: Optional[str] = None
    refund_status: Optional[str] = None


class BookingModificationRequest(StrictRequestModel):
    new_start_at: AwareDatetime = Field(..., description="Proposed start, with a UTC offset")
    reason: Optional[str] = Field(None, max_length=300)


class BookingModificationDecision(StrictRequestModel):
    action: Literal["approve", "reject"]
