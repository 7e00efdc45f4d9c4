"""Payment lookups keyed by the gateway's identifiers."""

from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.payment import Payment
from .base_repository import BaseRepository


class PaymentRepository(BaseRepository[Payment]):
    def __init__(self, db: Session):
        super().__init__(db, Payment)

    def claim_payment(self, payment_id: str) -> bool:
        """
        Bump refund_version as the first write of a refund staging.

        Concurrent stagings against one payment queue on the row lock
        (PostgreSQL) or the database write lock (SQLite) until the holder
        finishes, so the refundable balance is read after any rival commit.
        Returns False when the payment does not exist.
        """
        try:
            result = self.db.execute(
                update(Payment)
                .where(Payment.id == payment_id)
                .values(refund_version=Payment.refund_version + 1)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)
        except SQLAlchemyError as e:
            self.logger.error("Error claiming payment %s: %s", payment_id, e)
            self.db.rollback()
            raise RepositoryException(f"Failed to claim payment: {str(e)}")

    def get_by_gateway_order_id(
        self, gateway_order_id: str, *, for_update: bool = False
    ) -> Optional[Payment]:
        query = self._build_query().filter(Payment.gateway_order_id == gateway_order_id)
        if for_update:
            query = query.populate_existing()
            if self.row_locks:
                query = query.with_for_update()
        rows = self._execute_query(query.limit(1))
        return rows[0] if rows else None

    def get_by_gateway_payment_id(self, gateway_payment_id: str) -> Optional[Payment]:
        return self.find_one_by(gateway_payment_id=gateway_payment_id)

    def get_by_request_token(self, request_token: str) -> Optional[Payment]:
        return self.find_one_by(request_token=request_token)

    def list_for_customer(self, customer_id: str, *, limit: int = 100) -> List[Payment]:
        query = (
            self._build_query()
            .filter(Payment.customer_id == customer_id)
            .order_by(Payment.created_at.desc())
            .limit(limit)
        )
        return self._execute_query(query)
