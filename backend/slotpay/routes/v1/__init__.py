"""
API v1 Routes

Versioned API endpoints under /api/v1.
"""

from . import availability, bookings, orders, payments, refunds

__all__ = [
    "availability",
    "bookings",
    "orders",
    "payments",
    "refunds",
]
