# backend/slotpay/repositories/__init__.py
"""
Repository layer for SlotPay.

Usage:
    from slotpay.repositories import RepositoryFactory

    bookings = RepositoryFactory.create_booking_repository(db)
    overlapping = bookings.find_overlapping(provider_id, start_at, end_at)
"""

from .base_repository import BaseRepository
from .factory import RepositoryFactory

__all__ = ["BaseRepository", "RepositoryFactory"]
