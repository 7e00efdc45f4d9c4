"""Refund request queries, including the cumulative-amount guard."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.refund_request import COMMITTED_REFUND_STATUSES, RefundRequest, RefundStatus
from .base_repository import BaseRepository


class RefundRequestRepository(BaseRepository[RefundRequest]):
    def __init__(self, db: Session):
        super().__init__(db, RefundRequest)

    def committed_amount_for_payment(self, payment_id: str) -> Decimal:
        """Sum of refund amounts that still count against the payment."""
        query = self.db.query(func.coalesce(func.sum(RefundRequest.amount), 0)).filter(
            RefundRequest.payment_id == payment_id,
            RefundRequest.status.in_(COMMITTED_REFUND_STATUSES),
        )
        return Decimal(str(self._execute_scalar(query) or 0))

    def list_for_payment(self, payment_id: str) -> List[RefundRequest]:
        query = (
            self._build_query()
            .filter(RefundRequest.payment_id == payment_id)
            .order_by(RefundRequest.created_at.asc())
        )
        return self._execute_query(query)

    def get_open_automatic_for_payment(self, payment_id: str) -> Optional[RefundRequest]:
        query = self._build_query().filter(
            RefundRequest.payment_id == payment_id,
            RefundRequest.is_automatic.is_(True),
            RefundRequest.status != RefundStatus.REJECTED.value,
        )
        rows = self._execute_query(query.limit(1))
        return rows[0] if rows else None

    def get_by_gateway_refund_id(self, gateway_refund_id: str) -> Optional[RefundRequest]:
        return self.find_one_by(gateway_refund_id=gateway_refund_id)

    def list_processing_awaiting_gateway(
        self, updated_before: datetime, *, limit: int = 50
    ) -> List[RefundRequest]:
        """Processing refunds the gateway has acknowledged but not settled."""
        query = (
            self._build_query()
            .filter(
                RefundRequest.status == RefundStatus.PROCESSING.value,
                RefundRequest.gateway_refund_id.isnot(None),
                func.coalesce(RefundRequest.updated_at, RefundRequest.created_at) <= updated_before,
            )
            .order_by(RefundRequest.created_at.asc())
            .limit(limit)
        )
        return self._execute_query(query)
