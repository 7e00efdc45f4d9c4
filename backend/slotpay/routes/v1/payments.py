# backend/slotpay/routes/v1/payments.py
"""
Payment routes - API v1

Mounted under /api/v1/payments.

Endpoints:
    POST /verify  - Checkout callback: verify the signature and confirm the booking
    POST /webhook - Gateway webhook (HMAC-authenticated, no caller identity)
"""

import asyncio
import logging

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from ...api.dependencies import get_payment_verifier, get_webhook_service
from ...core.exceptions import DomainException
from ...schemas.payment import (
    PaymentVerificationRequest,
    PaymentVerificationResponse,
    WebhookAckResponse,
)
from ...services.gateway_webhook_service import GatewayWebhookService
from ...services.payment_verifier import PaymentVerifier, VerificationOutcome
from ._errors import handle_domain_exception

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["payments-v1"])

_OUTCOME_MESSAGES = {
    VerificationOutcome.CONFIRMED: "Payment verified and booking confirmed",
    VerificationOutcome.ALREADY_CONFIRMED: "Payment was already verified",
    VerificationOutcome.SLOT_CONFLICT_REFUND_PENDING: (
        "The slot was taken before payment completed; a full refund has been initiated"
    ),
}


@router.post(
    "/verify",
    response_model=PaymentVerificationResponse,
    responses={409: {"model": PaymentVerificationResponse}},
)
async def verify_payment(
    payload: PaymentVerificationRequest = Body(...),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
) -> JSONResponse:
    """
    Verify the checkout signature and capture the payment.

    A payment that arrives after its slot was lost is still accepted, but
    answered with 409 and the id of the compensating refund.
    """
    try:
        result = await asyncio.to_thread(verifier.verify_payment, payload)
    except DomainException as e:
        handle_domain_exception(e)

    body = PaymentVerificationResponse(
        outcome=result.outcome.value,
        payment_id=result.payment_id,
        booking_id=result.booking_id,
        refund_request_id=result.refund_request_id,
        requires_refund=result.requires_refund,
        message=_OUTCOME_MESSAGES[result.outcome],
    )
    status_code = 409 if result.requires_refund else 200
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.post("/webhook", response_model=WebhookAckResponse)
async def handle_gateway_webhook(
    request: Request,
    webhook_service: GatewayWebhookService = Depends(get_webhook_service),
) -> WebhookAckResponse:
    """
    Apply a gateway event.

    Redeliveries of an event already applied are acknowledged with
    ``duplicate: true`` and change nothing.
    """
    raw_body = await request.body()
    signature = request.headers.get("x-gateway-signature")
    event_id = request.headers.get("x-gateway-event-id")
    if not signature:
        logger.warning("Webhook received without signature")

    try:
        outcome = await asyncio.to_thread(webhook_service.handle, raw_body, signature, event_id)
    except DomainException as e:
        handle_domain_exception(e)

    return WebhookAckResponse(status=outcome.status, event=outcome.event, duplicate=outcome.duplicate)
