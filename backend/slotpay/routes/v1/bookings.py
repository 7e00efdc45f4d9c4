# backend/slotpay/routes/v1/bookings.py
"""
Booking routes - API v1

Mounted under /api/v1/bookings. All business logic delegated to BookingLedger.

Endpoints:
    GET /                       - List bookings visible to the caller
    GET /{booking_id}           - Booking details
    POST /{booking_id}/complete - Mark a confirmed booking completed (provider/admin)
    POST /{booking_id}/cancel   - Cancel a confirmed booking
    POST /{booking_id}/reject   - Reject a pending booking (provider/admin)
    POST /{booking_id}/modification         - Propose a new start for a pending or confirmed booking
    POST /{booking_id}/modification/respond - Approve or reject the open proposal (the other party)
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from ...api.dependencies import get_booking_ledger, get_current_actor
from ...core.exceptions import DomainException
from ...models.booking import BookingStatus
from ...principal import Actor
from ...schemas.booking import (
    BookingCancelRequest,
    BookingCancelResponse,
    BookingListResponse,
    BookingModificationDecision,
    BookingModificationRequest,
    BookingRejectRequest,
    BookingResponse,
)
from ...services.booking_ledger import BookingLedger
from ._errors import handle_domain_exception

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["bookings-v1"])


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    customer_id: Optional[str] = Query(None, description="Admin only: whose bookings to list"),
    provider_id: Optional[str] = Query(None, description="Admin only: whose calendar to list"),
    status: Optional[BookingStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
    ledger: BookingLedger = Depends(get_booking_ledger),
) -> BookingListResponse:
    try:
        bookings = await asyncio.to_thread(
            ledger.list_bookings,
            actor,
            customer_id=customer_id,
            provider_id=provider_id,
            status=status.value if status is not None else None,
            limit=limit,
        )
    except DomainException as e:
        handle_domain_exception(e)

    items = [BookingResponse.from_booking(booking) for booking in bookings]
    return BookingListResponse(items=items, total=len(items))


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    ledger: BookingLedger = Depends(get_booking_ledger),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(ledger.get_booking, booking_id, actor)
    except DomainException as e:
        handle_domain_exception(e)
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    ledger: BookingLedger = Depends(get_booking_ledger),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(ledger.complete_booking, booking_id, actor)
    except DomainException as e:
        handle_domain_exception(e)
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/cancel", response_model=BookingCancelResponse)
async def cancel_booking(
    booking_id: str,
    payload: Optional[BookingCancelRequest] = Body(None),
    actor: Actor = Depends(get_current_actor),
    ledger: BookingLedger = Depends(get_booking_ledger),
) -> BookingCancelResponse:
    """
    Cancel a confirmed booking.

    A provider or admin cancellation refunds the captured payment in full.
    """
    try:
        reason = payload.reason if payload is not None else None
        result = await asyncio.to_thread(ledger.cancel_booking, booking_id, actor, reason)
    except DomainException as e:
        handle_domain_exception(e)

    return BookingCancelResponse(
        booking=BookingResponse.from_booking(result.booking),
        refund_request_id=result.refund.id if result.refund is not None else None,
        refund_status=result.refund.status if result.refund is not None else None,
    )


@router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: str,
    payload: BookingRejectRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    ledger: BookingLedger = Depends(get_booking_ledger),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(ledger.reject_booking, booking_id, actor, payload.reason)
    except DomainException as e:
        handle_domain_exception(e)
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/modification", response_model=BookingResponse)
async def request_modification(
    booking_id: str,
    payload: BookingModificationRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    ledger: BookingLedger = Depends(get_booking_ledger),
) -> BookingResponse:
    """Propose moving the booking; the duration is kept."""
    try:
        booking = await asyncio.to_thread(
            ledger.request_modification, booking_id, actor, payload.new_start_at, payload.reason
        )
    except DomainException as e:
        handle_domain_exception(e)
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/modification/respond", response_model=BookingResponse)
async def respond_to_modification(
    booking_id: str,
    payload: BookingModificationDecision = Body(...),
    actor: Actor = Depends(get_current_actor),
    ledger: BookingLedger = Depends(get_booking_ledger),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(
            ledger.respond_to_modification, booking_id, actor, payload.action == "approve"
        )
    except DomainException as e:
        handle_domain_exception(e)
    return BookingResponse.from_booking(booking)
