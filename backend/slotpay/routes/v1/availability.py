# backend/slotpay/routes/v1/availability.py
"""
Availability routes - API v1

Mounted under /api/v1/providers.

Endpoints:
    GET /{provider_id}/availability - Free intervals and start times for a date range
"""

import asyncio
from datetime import date
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...api.dependencies import get_availability_resolver
from ...core.exceptions import DomainException
from ...schemas.availability import AvailabilityResponse, FreeIntervalResponse
from ...services.availability_resolver import AvailabilityResolver
from ._errors import handle_domain_exception

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["availability-v1"])


@router.get("/{provider_id}/availability", response_model=AvailabilityResponse)
async def get_provider_availability(
    provider_id: str,
    start_date: date = Query(..., description="First local date (inclusive)"),
    end_date: date = Query(..., description="Last local date (inclusive)"),
    service_id: Optional[str] = Query(None, description="Service whose duration to fit"),
    duration_minutes: Optional[int] = Query(None, ge=5, le=24 * 60),
    resolver: AvailabilityResolver = Depends(get_availability_resolver),
) -> AvailabilityResponse:
    """
    Free time for a provider.

    The answer is a hint: the slot is only held once an order is issued.
    """
    try:
        availability = await asyncio.to_thread(
            resolver.resolve_availability,
            provider_id,
            start_date,
            end_date,
            service_id=service_id,
            duration_minutes=duration_minutes,
        )
    except DomainException as e:
        handle_domain_exception(e)

    free_intervals = []
    for interval in availability.intervals:
        local_start, local_end = interval.local_bounds(availability.utc_offset_minutes)
        free_intervals.append(
            FreeIntervalResponse(
                start_at=interval.start_at,
                end_at=interval.end_at,
                local_start=local_start.isoformat(),
                local_end=local_end.isoformat(),
            )
        )

    return AvailabilityResponse(
        provider_id=availability.provider_id,
        service_id=service_id,
        start_date=start_date,
        end_date=end_date,
        duration_minutes=availability.duration_minutes,
        utc_offset_minutes=availability.utc_offset_minutes,
        free_intervals=free_intervals,
        start_times=availability.start_times,
    )
