"""Schemas for the availability read endpoint."""

from datetime import date, datetime
from typing import List, Optional

from pydantic import Field

from ._strict_base import StrictModel


class FreeIntervalResponse(StrictModel):
    start_at: datetime = Field(..., description="Interval start (UTC)")
    end_at: datetime = Field(..., description="Interval end (UTC, exclusive)")
    local_start: str = Field(..., description="Start in the provider's local time, ISO 8601")
    local_end: str = Field(..., description="End in the provider's local time, ISO 8601")


class AvailabilityResponse(StrictModel):
    provider_id: str
    service_id: Optional[str] = None
    start_date: date
    end_date: date
    duration_minutes: int
    utc_offset_minutes: int
    free_intervals: List[FreeIntervalResponse]
    start_times: List[datetime] = Field(
        default_factory=list, description="Bookable start instants (UTC), one duration apart"
    )
