"""Slot reservation holds."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.slot_reservation import SlotReservation
from .base_repository import BaseRepository


class ReservationRepository(BaseRepository[SlotReservation]):
    def __init__(self, db: Session):
        super().__init__(db, SlotReservation)

    def insert_hold(self, reservation: SlotReservation) -> bool:
        """
        Insert a hold; False when the (provider, start, end) key is already held.

        A duplicate key rolls the whole transaction back, so callers must
        treat False as the end of their unit of work.
        """
        try:
            self.db.add(reservation)
            self.db.flush()
            return True
        except IntegrityError as exc:
            self.logger.info("Reservation key already held: %s", exc.orig)
            self.db.rollback()
            return False

    def get_by_payment_id(self, payment_id: str) -> Optional[SlotReservation]:
        return self.find_one_by(payment_id=payment_id)

    def get_by_booking_id(self, booking_id: str) -> Optional[SlotReservation]:
        return self.find_one_by(booking_id=booking_id)

    def list_expired(
        self,
        now: datetime,
        *,
        provider_id: Optional[str] = None,
        exclude_payment_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[SlotReservation]:
        try:
            query = self._build_query().filter(SlotReservation.expires_at <= now)
            if provider_id:
                query = query.filter(SlotReservation.provider_id == provider_id)
            if exclude_payment_id:
                query = query.filter(SlotReservation.payment_id != exclude_payment_id)
            return query.order_by(SlotReservation.expires_at.asc()).limit(limit).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing expired reservations: {str(e)}")
            raise RepositoryException(f"Failed to list expired reservations: {str(e)}")
