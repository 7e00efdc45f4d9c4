"""Shared constants and helpers for SlotPay tests."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict

from slotpay.core.crypto import hmac_sha256_hex, payment_signature
from slotpay.core.timezone_utils import local_to_utc

KEY_SECRET = "test-key-secret"
WEBHOOK_SECRET = "test-webhook-secret"
IST = 330

# Sunday noon UTC; the provider works Mondays.
NOW = datetime(2030, 1, 6, 12, 0, tzinfo=timezone.utc)
MONDAY = date(2030, 1, 7)
TUESDAY = date(2030, 1, 8)

CUSTOMER = "cust_alice"
OTHER_CUSTOMER = "cust_bob"
ADMIN = "admin_ops"


def local_slot(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    """UTC instant of a wall-clock time at the provider (UTC+05:30)."""
    return local_to_utc(day, time(hour, minute), IST)


def sign_payment(order_id: str, payment_id: str) -> str:
    return payment_signature(order_id, payment_id, KEY_SECRET)


def sign_webhook(body: bytes) -> str:
    return hmac_sha256_hex(body, WEBHOOK_SECRET)


def as_actor(actor_id: str, role: str) -> Dict[str, str]:
    """Identity headers the edge proxy forwards for an authenticated caller."""
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


class FrozenClock:
    """Callable clock the services read instead of the wall clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now
