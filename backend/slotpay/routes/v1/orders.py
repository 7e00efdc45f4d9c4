# backend/slotpay/routes/v1/orders.py
"""
Order routes - API v1

Mounted under /api/v1/orders.

Endpoints:
    POST / - Hold a slot and open a payment order for it
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, status

from ...api.dependencies import get_current_actor, get_order_issuer
from ...core.exceptions import DomainException
from ...principal import Actor, ActorRole
from ...schemas.order import OrderCreateRequest, OrderResponse
from ...services.order_issuer import OrderIssuer
from ._errors import handle_domain_exception

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["orders-v1"])


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreateRequest = Body(...),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=128),
    actor: Actor = Depends(get_current_actor),
    order_issuer: OrderIssuer = Depends(get_order_issuer),
) -> OrderResponse:
    """
    Claim the requested slot and open a gateway order for the service price.

    Repeating the call with the same Idempotency-Key returns the original
    order instead of claiming a second slot.
    """
    if actor.role != ActorRole.CUSTOMER:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "Only customers can book", "code": "FORBIDDEN"},
        )
    try:
        order = await asyncio.to_thread(
            order_issuer.issue_order,
            actor.id,
            payload.provider_id,
            payload.service_id,
            payload.start_at,
            notes=payload.notes,
            request_token=(idempotency_key or "").strip() or None,
        )
    except DomainException as e:
        handle_domain_exception(e)

    return OrderResponse(
        gateway_order_id=order.gateway_order_id,
        amount=order.amount,
        currency=order.currency,
        booking_id=order.booking_id,
        payment_id=order.payment_id,
        receipt=order.receipt,
        key_id=order.key_id,
        reservation_expires_at=order.reservation_expires_at,
        replayed=order.replayed,
    )
