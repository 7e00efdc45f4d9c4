"""Schemas for gateway callbacks and webhooks."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ._strict_base import StrictModel, StrictRequestModel


class PaymentVerificationRequest(StrictRequestModel):
    """Credentials the checkout hands back after the customer pays."""

    order_id: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_]+$")
    payment_id: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_]+$")
    signature: str = Field(..., min_length=64, max_length=64, pattern=r"^[0-9a-fA-F]{64}$")


class PaymentVerificationResponse(StrictModel):
    outcome: str
    payment_id: str
    booking_id: Optional[str] = None
    refund_request_id: Optional[str] = None
    requires_refund: bool = False
    message: str


class _GatewayEntity(BaseModel):
    """Entities carry many gateway fields we don't use; only the ones we read are declared."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)


class GatewayPaymentEntity(_GatewayEntity):
    order_id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    error_description: Optional[str] = None


class GatewayRefundEntity(_GatewayEntity):
    payment_id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    error_description: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)


class GatewayEntityWrapper(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entity: Dict[str, Any]


class GatewayWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payment: Optional[GatewayEntityWrapper] = None
    refund: Optional[GatewayEntityWrapper] = None


class GatewayWebhookEnvelope(BaseModel):
    """Outer webhook body; validated only after its HMAC has been checked."""

    model_config = ConfigDict(extra="ignore")

    event: str = Field(..., min_length=1, max_length=100)
    payload: GatewayWebhookPayload
    created_at: Optional[int] = None

    def payment_entity(self) -> Optional[GatewayPaymentEntity]:
        if self.payload.payment is None:
            return None
        return GatewayPaymentEntity.model_validate(self.payload.payment.entity)

    def refund_entity(self) -> Optional[GatewayRefundEntity]:
        if self.payload.refund is None:
            return None
        return GatewayRefundEntity.model_validate(self.payload.refund.entity)


class WebhookAckResponse(StrictModel):
    status: str
    event: Optional[str] = None
    duplicate: bool = False
