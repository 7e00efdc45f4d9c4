"""Tests for the gateway REST client and its in-memory stand-in."""

import base64
from decimal import Decimal
import json

import httpx
import pytest

from slotpay.integrations.payment_gateway_client import (
    FakePaymentGatewayClient,
    PaymentGatewayClient,
    PaymentGatewayError,
    from_minor_units,
    to_minor_units,
)


def _client(handler):
    return PaymentGatewayClient(
        key_id="rzp_test_key",
        key_secret="rzp_test_secret",
        base_url="https://gateway.test/v1/",
        transport=httpx.MockTransport(handler),
    )


class TestMinorUnits:
    def test_to_minor_units(self):
        assert to_minor_units(Decimal("500.00")) == 50000
        assert to_minor_units(Decimal("0.01")) == 1
        assert to_minor_units(Decimal("10.005")) == 1001

    def test_from_minor_units(self):
        assert from_minor_units(50000) == Decimal("500.00")
        assert from_minor_units(1) == Decimal("0.01")


class TestPaymentGatewayClient:
    def test_requires_credentials(self):
        with pytest.raises(ValueError):
            PaymentGatewayClient(key_id="", key_secret="secret")
        with pytest.raises(ValueError):
            PaymentGatewayClient(key_id="rzp_test_key", key_secret="")

    def test_create_order_sends_minor_units_with_basic_auth(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "order_1", "amount": 50000, "status": "created"})

        order = _client(handler).create_order(
            amount=Decimal("500.00"), currency="INR", receipt="bk_1", notes={"booking_id": "bk_1"}
        )

        assert order["id"] == "order_1"
        assert seen["method"] == "POST"
        assert seen["url"] == "https://gateway.test/v1/orders"
        expected = base64.b64encode(b"rzp_test_key:rzp_test_secret").decode()
        assert seen["auth"] == f"Basic {expected}"
        assert seen["body"] == {
            "amount": 50000,
            "currency": "INR",
            "receipt": "bk_1",
            "notes": {"booking_id": "bk_1"},
        }

    def test_create_refund_carries_idempotency_key(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("Idempotency-Key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "rfnd_1", "status": "processed"})

        refund = _client(handler).create_refund(
            payment_id="pay_1", amount=Decimal("125.50"), idempotency_key="01REFUND"
        )

        assert refund["id"] == "rfnd_1"
        assert seen["path"] == "/v1/payments/pay_1/refund"
        assert seen["key"] == "01REFUND"
        assert seen["body"] == {"amount": 12550}

    def test_server_error_is_retryable(self):
        def handler(request):
            return httpx.Response(
                502, json={"error": {"code": "SERVER_ERROR", "description": "upstream down"}}
            )

        with pytest.raises(PaymentGatewayError) as exc_info:
            _client(handler).get_refund("rfnd_1")
        assert exc_info.value.status_code == 502
        assert exc_info.value.error_code == "SERVER_ERROR"
        assert exc_info.value.retryable is True

    def test_rate_limit_is_retryable(self):
        with pytest.raises(PaymentGatewayError) as exc_info:
            _client(lambda request: httpx.Response(429, text="slow down")).get_refund("rfnd_1")
        assert exc_info.value.retryable is True
        assert exc_info.value.error_body == "slow down"

    def test_client_error_is_not_retryable(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"code": "BAD_REQUEST_ERROR"}})

        with pytest.raises(PaymentGatewayError) as exc_info:
            _client(handler).create_refund(payment_id="pay_1", amount=Decimal("1"), idempotency_key="k")
        assert exc_info.value.status_code == 400
        assert exc_info.value.retryable is False

    def test_network_failure_has_no_status(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(PaymentGatewayError) as exc_info:
            _client(handler).create_order(amount=Decimal("1"), currency="INR", receipt="r")
        assert exc_info.value.status_code is None
        assert exc_info.value.retryable is True

    def test_malformed_json(self):
        with pytest.raises(PaymentGatewayError) as exc_info:
            _client(lambda request: httpx.Response(200, text="<html>")).get_refund("rfnd_1")
        assert "malformed" in str(exc_info.value)

    def test_missing_ids_are_rejected_locally(self):
        client = _client(lambda request: httpx.Response(200, json={}))

        with pytest.raises(ValueError):
            client.get_refund("")
        with pytest.raises(ValueError):
            client.create_refund(payment_id="", amount=Decimal("1"), idempotency_key="k")


class TestFakePaymentGatewayClient:
    def test_refunds_are_idempotent_per_key(self):
        gateway = FakePaymentGatewayClient()

        first = gateway.create_refund(payment_id="pay_1", amount=Decimal("10"), idempotency_key="k1")
        again = gateway.create_refund(payment_id="pay_1", amount=Decimal("10"), idempotency_key="k1")
        other = gateway.create_refund(payment_id="pay_1", amount=Decimal("5"), idempotency_key="k2")

        assert first["id"] == again["id"]
        assert other["id"] != first["id"]
        assert gateway.refund_count() == 2

    def test_fail_next_applies_once(self):
        gateway = FakePaymentGatewayClient()
        gateway.fail_next("create_order")

        with pytest.raises(PaymentGatewayError) as exc_info:
            gateway.create_order(amount=Decimal("1"), currency="INR", receipt="r")
        assert exc_info.value.status_code == 503

        order = gateway.create_order(amount=Decimal("1"), currency="INR", receipt="r")
        assert order["id"].startswith("order_")
        assert order["amount"] == 100

    def test_pending_refunds_settle_later(self):
        gateway = FakePaymentGatewayClient(refund_status="pending")
        refund = gateway.create_refund(payment_id="pay_1", amount=Decimal("10"), idempotency_key="k1")

        assert gateway.get_refund(refund["id"])["status"] == "pending"
        gateway.settle_refund(refund["id"])
        assert gateway.get_refund(refund["id"])["status"] == "processed"

    def test_unknown_refund(self):
        with pytest.raises(PaymentGatewayError) as exc_info:
            FakePaymentGatewayClient().get_refund("rfnd_missing")
        assert exc_info.value.status_code == 404
