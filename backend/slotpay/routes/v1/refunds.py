# backend/slotpay/routes/v1/refunds.py
"""
Refund routes - API v1

Mounted under /api/v1/refunds. All business logic delegated to RefundCoordinator.

Endpoints:
    GET /                      - Refund requests for one payment
    POST /                     - Request a refund against a captured payment
    GET /{refund_id}           - Refund request details
    POST /{refund_id}/approve  - Approve and submit to the gateway (admin)
    POST /{refund_id}/reject   - Reject with a reason (admin)
    POST /{refund_id}/retry    - Resubmit a failed refund (admin)
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, status

from ...api.dependencies import get_current_actor, get_refund_coordinator, require_admin
from ...core.exceptions import DomainException
from ...principal import Actor
from ...schemas.refund import (
    RefundCreateRequest,
    RefundListResponse,
    RefundRejectRequest,
    RefundResponse,
)
from ...services.refund_coordinator import RefundCoordinator
from ._errors import handle_domain_exception

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["refunds-v1"])


@router.get("", response_model=RefundListResponse)
async def list_refunds(
    payment_id: str = Query(..., min_length=1),
    actor: Actor = Depends(get_current_actor),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
) -> RefundListResponse:
    try:
        refunds = await asyncio.to_thread(coordinator.list_for_payment, payment_id, actor)
    except DomainException as e:
        handle_domain_exception(e)
    items = [RefundResponse.from_refund(refund) for refund in refunds]
    return RefundListResponse(items=items, total=len(items))


@router.post("", response_model=RefundResponse, status_code=status.HTTP_201_CREATED)
async def submit_refund(
    payload: RefundCreateRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
) -> RefundResponse:
    """
    File a refund request.

    Requests wait for an admin decision; the total requested can never exceed
    the captured amount.
    """
    try:
        refund = await asyncio.to_thread(
            coordinator.submit_refund,
            payload.payment_id,
            actor,
            reason=payload.reason,
            amount=payload.amount,
        )
    except DomainException as e:
        handle_domain_exception(e)
    return RefundResponse.from_refund(refund)


@router.get("/{refund_id}", response_model=RefundResponse)
async def get_refund(
    refund_id: str,
    actor: Actor = Depends(get_current_actor),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
) -> RefundResponse:
    try:
        refund = await asyncio.to_thread(coordinator.get_refund, refund_id, actor)
    except DomainException as e:
        handle_domain_exception(e)
    return RefundResponse.from_refund(refund)


@router.post("/{refund_id}/approve", response_model=RefundResponse)
async def approve_refund(
    refund_id: str,
    note: Optional[str] = Body(None, embed=True, max_length=1000),
    actor: Actor = Depends(get_current_actor),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
) -> RefundResponse:
    require_admin(actor)
    try:
        refund = await asyncio.to_thread(coordinator.approve_refund, refund_id, actor, note=note)
    except DomainException as e:
        handle_domain_exception(e)
    return RefundResponse.from_refund(refund)


@router.post("/{refund_id}/reject", response_model=RefundResponse)
async def reject_refund(
    refund_id: str,
    payload: RefundRejectRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
) -> RefundResponse:
    require_admin(actor)
    try:
        refund = await asyncio.to_thread(coordinator.reject_refund, refund_id, actor, payload.reason)
    except DomainException as e:
        handle_domain_exception(e)
    return RefundResponse.from_refund(refund)


@router.post("/{refund_id}/retry", response_model=RefundResponse)
async def retry_refund(
    refund_id: str,
    actor: Actor = Depends(get_current_actor),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
) -> RefundResponse:
    require_admin(actor)
    try:
        refund = await asyncio.to_thread(coordinator.retry_refund, refund_id, actor)
    except DomainException as e:
        handle_domain_exception(e)
    return RefundResponse.from_refund(refund)
