"""Refund request DTOs."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import Field

from ..core.timezone_utils import ensure_utc
from ..models.refund_request import RefundRequest
from ._strict_base import StrictModel, StrictRequestModel


class RefundCreateRequest(StrictRequestModel):
    payment_id: str = Field(..., min_length=1, max_length=26)
    amount: Optional[Decimal] = Field(
        None,
        gt=0,
        max_digits=10,
        decimal_places=2,
        description="Amount to refund. Everything still refundable if omitted.",
    )
    reason: str = Field(..., min_length=1, max_length=1000)


class RefundRejectRequest(StrictRequestModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class RefundResponse(StrictModel):
    id: str
    payment_id: str
    booking_id: Optional[str] = None
    requested_by: str
    requested_by_role: str
    is_automatic: bool
    amount: Decimal
    currency: str
    reason: str
    status: str
    admin_response: Optional[Dict[str, Any]] = None
    gateway_refund_id: Optional[str] = None
    gateway_refund_status: Optional[str] = None
    failure_reason: Optional[str] = None
    attempt_count: int
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_refund(cls, refund: RefundRequest) -> RefundResponse:
        admin_response = refund.admin_response
        if admin_response is not None:
            admin_response = {**admin_response, "responded_at": ensure_utc(admin_response["responded_at"])}
        return cls(
            id=refund.id,
            payment_id=refund.payment_id,
            booking_id=refund.booking_id,
            requested_by=refund.requested_by,
            requested_by_role=refund.requested_by_role,
            is_automatic=bool(refund.is_automatic),
            amount=refund.amount,
            currency=refund.currency,
            reason=refund.reason,
            status=refund.status,
            admin_response=admin_response,
            gateway_refund_id=refund.gateway_refund_id,
            gateway_refund_status=refund.gateway_refund_status,
            failure_reason=refund.failure_reason,
            attempt_count=refund.attempt_count or 0,
            processed_at=ensure_utc(refund.processed_at),
            created_at=ensure_utc(refund.created_at),
        )


class RefundListResponse(StrictModel):
    items: List[RefundResponse]
    total: int
