"""HMAC helpers for authenticating gateway payment callbacks and webhooks."""

from __future__ import annotations

import hashlib
import hmac

from pydantic import SecretStr


def _secret_bytes(secret: str | SecretStr) -> bytes:
    value = secret.get_secret_value() if isinstance(secret, SecretStr) else secret
    if not value:
        raise ValueError("Signing secret must be configured")
    return value.encode("utf-8")


def hmac_sha256_hex(message: bytes, secret: str | SecretStr) -> str:
    return hmac.new(_secret_bytes(secret), message, hashlib.sha256).hexdigest()


def payment_signature(order_id: str, payment_id: str, secret: str | SecretStr) -> str:
    """Expected checkout signature: hex HMAC-SHA256 of "order_id|payment_id"."""
    return hmac_sha256_hex(f"{order_id}|{payment_id}".encode("utf-8"), secret)


def _matches(expected: str, signature: str | None) -> bool:
    candidate = (signature or "").strip().lower().encode("utf-8", "surrogatepass")
    return hmac.compare_digest(expected.encode("ascii"), candidate)


def verify_payment_signature(
    order_id: str, payment_id: str, signature: str, secret: str | SecretStr
) -> bool:
    expected = payment_signature(order_id, payment_id, secret)
    return _matches(expected, signature)


def verify_webhook_signature(raw_body: bytes, signature: str, secret: str | SecretStr) -> bool:
    """Webhook bodies are signed whole; the raw bytes must be used, not re-serialised JSON."""
    expected = hmac_sha256_hex(raw_body, secret)
    return _matches(expected, signature)
