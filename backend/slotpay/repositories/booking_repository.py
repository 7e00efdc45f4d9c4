# backend/slotpay/repositories/booking_repository.py
"""
Booking Repository for SlotPay

Calendar queries used by availability and by the slot-claim re-check.
All datetimes are passed in as aware UTC values.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.booking import BLOCKING_STATUSES, Booking, BookingStatus
from ..models.slot_reservation import SlotReservation
from .base_repository import BaseRepository


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def find_overlapping(
        self,
        provider_id: str,
        start_at: datetime,
        end_at: datetime,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        """
        Bookings in pending/confirmed whose [start, end) intersects [start_at, end_at).

        Intended to run inside a claim transaction after expired holds were
        purged, so every pending row returned is backed by a live reservation.
        """
        try:
            query = self._build_query().filter(
                Booking.provider_id == provider_id,
                Booking.status.in_(BLOCKING_STATUSES),
                Booking.start_at < end_at,
                Booking.end_at > start_at,
            )
            if exclude_booking_id:
                query = query.filter(Booking.id != exclude_booking_id)
            return query.order_by(Booking.start_at.asc()).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error checking overlap: {str(e)}")
            raise RepositoryException(f"Failed to check overlap: {str(e)}")

    def list_blocking_in_window(
        self, provider_id: str, window_start: datetime, window_end: datetime, now: datetime
    ) -> List[Booking]:
        """
        Bookings that occupy the provider's calendar for an availability read.

        Confirmed bookings always block; pending ones only while their hold
        has not expired (no purge happens on this read path).
        """
        try:
            query = (
                self.db.query(Booking)
                .outerjoin(SlotReservation, SlotReservation.booking_id == Booking.id)
                .filter(
                    Booking.provider_id == provider_id,
                    Booking.start_at < window_end,
                    Booking.end_at > window_start,
                    or_(
                        Booking.status == BookingStatus.CONFIRMED.value,
                        and_(
                            Booking.status == BookingStatus.PENDING.value,
                            SlotReservation.expires_at > now,
                        ),
                    ),
                )
                .order_by(Booking.start_at.asc())
            )
            return query.all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing blocking bookings: {str(e)}")
            raise RepositoryException(f"Failed to list bookings: {str(e)}")

    def list_for_customer(self, customer_id: str, *, limit: int = 100) -> List[Booking]:
        query = (
            self._build_query()
            .filter(Booking.customer_id == customer_id)
            .order_by(Booking.start_at.desc())
            .limit(limit)
        )
        return self._execute_query(query)

    def list_for_provider(
        self, provider_id: str, *, status: Optional[str] = None, limit: int = 100
    ) -> List[Booking]:
        query = self._build_query().filter(Booking.provider_id == provider_id)
        if status:
            query = query.filter(Booking.status == status)
        return self._execute_query(query.order_by(Booking.start_at.asc()).limit(limit))

    def get_by_payment_id(self, payment_id: str) -> Optional[Booking]:
        return self.find_one_by(payment_id=payment_id)
