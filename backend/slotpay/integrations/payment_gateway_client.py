"""Minimal REST client for the payment gateway (orders and refunds)."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
import json
import logging
import threading
import time
from typing import Any, Dict, Optional, cast

import httpx
from pydantic import SecretStr
import ulid

from slotpay.monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Rupees -> paise (or any 2-decimal currency to its minor unit)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


class PaymentGatewayError(RuntimeError):
    """Raised when the gateway responds with an error or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        error_code: str | None = None,
        error_body: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.error_body = error_body

    @property
    def retryable(self) -> bool:
        """Network failures, 429 and 5xx may succeed later; other 4xx will not."""
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class PaymentGatewayClient:
    """Thin client for the gateway's orders/refunds REST API."""

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str | SecretStr,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        secret_value = (
            key_secret.get_secret_value() if isinstance(key_secret, SecretStr) else key_secret
        )
        if not key_id or not secret_value:
            raise ValueError("Gateway key id and secret must be provided")

        self.key_id = key_id
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._auth = httpx.BasicAuth(key_id, secret_value)

    def create_order(
        self,
        *,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        """Open an order for ``amount`` (major units); returns the gateway order object."""
        body: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
        }
        if notes:
            body["notes"] = notes
        return self.request("POST", "/orders", json_body=body, operation="create_order")

    def create_refund(
        self,
        *,
        payment_id: str,
        amount: Decimal,
        idempotency_key: str,
        receipt: str | None = None,
        notes: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        """Refund part or all of a captured payment; the key makes retries safe."""
        if not payment_id:
            raise ValueError("payment_id must be provided")
        body: Dict[str, Any] = {"amount": to_minor_units(amount)}
        if receipt:
            body["receipt"] = receipt
        if notes:
            body["notes"] = notes
        return self.request(
            "POST",
            f"/payments/{payment_id}/refund",
            json_body=body,
            headers={"Idempotency-Key": idempotency_key},
            operation="create_refund",
        )

    def get_refund(self, refund_id: str) -> Dict[str, Any]:
        if not refund_id:
            raise ValueError("refund_id must be provided")
        return self.request("GET", f"/refunds/{refund_id}", operation="get_refund")

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
        headers: Dict[str, str] | None = None,
        operation: str = "request",
    ) -> Dict[str, Any]:
        """Perform a raw gateway request and return the parsed JSON payload."""

        url = f"{self._base_url}{path}"
        started = time.monotonic()
        status_label = "error"
        try:
            with httpx.Client(
                timeout=self._timeout,
                transport=self._transport,
                auth=self._auth,
                headers={"Accept": "application/json"},
            ) as client:
                try:
                    response = client.request(
                        method, url, json=json_body, params=params, headers=headers
                    )
                    response.raise_for_status()
                except httpx.HTTPStatusError as exc:
                    status = exc.response.status_code
                    error_payload: Any | None = None
                    error_code: str | None = None
                    try:
                        error_payload = exc.response.json()
                        if isinstance(error_payload, dict):
                            error = error_payload.get("error")
                            if isinstance(error, dict):
                                error_code = error.get("code")
                    except json.JSONDecodeError:
                        error_payload = exc.response.text

                    logger.error(
                        "Gateway API error %s for %s %s: %s",
                        status,
                        method,
                        path,
                        exc.response.text[:500],
                    )
                    raise PaymentGatewayError(
                        f"Gateway responded with status {status}",
                        status_code=status,
                        error_code=error_code,
                        error_body=error_payload,
                    ) from exc
                except httpx.RequestError as exc:
                    logger.error("Gateway request failure for %s %s: %s", method, path, str(exc))
                    raise PaymentGatewayError("Failed to reach payment gateway") from exc

            try:
                payload = cast(Dict[str, Any], response.json())
            except json.JSONDecodeError as exc:
                logger.error("Invalid JSON from gateway for %s %s", method, path)
                raise PaymentGatewayError("Received malformed JSON from gateway") from exc
            status_label = "success"
            return payload
        finally:
            prometheus_metrics.observe_gateway_call(
                operation, status_label, time.monotonic() - started
            )


class FakePaymentGatewayClient(PaymentGatewayClient):
    """
    In-memory gateway for local runs and tests.

    Refunds are idempotent on the Idempotency-Key just like the real API.
    ``fail_next`` makes the next call of an operation raise; ``refund_status``
    controls whether refunds settle immediately ("processed") or later ("pending").
    """

    def __init__(self, *, key_id: str = "rzp_test_fake", refund_status: str = "processed") -> None:
        super().__init__(key_id=key_id, key_secret="fake-gateway-secret")
        self.refund_status = refund_status
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.refunds: Dict[str, Dict[str, Any]] = {}
        self._refunds_by_key: Dict[str, str] = {}
        self._failures: Dict[str, PaymentGatewayError] = {}
        self._lock = threading.Lock()
        self.calls: list[tuple[str, Dict[str, Any]]] = []

    def fail_next(self, operation: str, error: PaymentGatewayError | None = None) -> None:
        self._failures[operation] = error or PaymentGatewayError(
            "Simulated gateway outage", status_code=503
        )

    def _maybe_fail(self, operation: str) -> None:
        error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    def create_order(
        self,
        *,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(("create_order", {"amount": amount, "receipt": receipt}))
            self._maybe_fail("create_order")
            order_id = f"order_{ulid.ULID()}"
            order = {
                "id": order_id,
                "entity": "order",
                "amount": to_minor_units(amount),
                "currency": currency,
                "receipt": receipt,
                "status": "created",
                "notes": notes or {},
            }
            self.orders[order_id] = order
            return dict(order)

    def create_refund(
        self,
        *,
        payment_id: str,
        amount: Decimal,
        idempotency_key: str,
        receipt: str | None = None,
        notes: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(
                ("create_refund", {"payment_id": payment_id, "key": idempotency_key})
            )
            self._maybe_fail("create_refund")
            existing = self._refunds_by_key.get(idempotency_key)
            if existing is not None:
                return dict(self.refunds[existing])
            refund_id = f"rfnd_{ulid.ULID()}"
            refund = {
                "id": refund_id,
                "entity": "refund",
                "payment_id": payment_id,
                "amount": to_minor_units(amount),
                "status": self.refund_status,
            }
            self.refunds[refund_id] = refund
            self._refunds_by_key[idempotency_key] = refund_id
            return dict(refund)

    def get_refund(self, refund_id: str) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(("get_refund", {"refund_id": refund_id}))
            self._maybe_fail("get_refund")
            refund = self.refunds.get(refund_id)
            if refund is None:
                raise PaymentGatewayError("Refund not found", status_code=404)
            return dict(refund)

    def settle_refund(self, refund_id: str, status: str = "processed") -> None:
        """Move a pending fake refund to its final state, as the gateway would later."""
        with self._lock:
            self.refunds[refund_id]["status"] = status

    def refund_count(self) -> int:
        return len(self.refunds)
