"""Schemas for issuing payment orders."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import AwareDatetime, Field

from ._strict_base import StrictModel, StrictRequestModel


class OrderCreateRequest(StrictRequestModel):
    provider_id: str = Field(..., min_length=1, max_length=26)
    service_id: str = Field(..., min_length=1, max_length=26)
    start_at: AwareDatetime = Field(..., description="Requested start, with a UTC offset")
    notes: Optional[str] = Field(None, max_length=1000)


class OrderResponse(StrictModel):
    gateway_order_id: str
    amount: Decimal
    currency: str
    booking_id: str
    payment_id: str
    receipt: str
    key_id: str
    reservation_expires_at: Optional[datetime] = None
    replayed: bool = False
