"""Route tests for /api/v1/refunds."""

from decimal import Decimal

import pytest

from tests.helpers import ADMIN, CUSTOMER, OTHER_CUSTOMER, as_actor, local_slot

REFUNDS_URL = "/api/v1/refunds"


@pytest.fixture
def paid(book):
    order, _ = book(local_slot(10))
    return order


@pytest.fixture
def pending_refund(client, paid):
    response = client.post(
        REFUNDS_URL,
        json={"payment_id": paid.payment_id, "reason": "Session was cut short", "amount": "200.00"},
        headers=as_actor(CUSTOMER, "customer"),
    )
    assert response.status_code == 201
    return response.json()


class TestRefundRoutes:
    def test_submit(self, pending_refund, paid):
        assert pending_refund["status"] == "pending"
        assert pending_refund["payment_id"] == paid.payment_id
        assert Decimal(pending_refund["amount"]) == Decimal("200.00")
        assert pending_refund["is_automatic"] is False

    def test_over_refund_is_rejected(self, client, paid, pending_refund):
        response = client.post(
            REFUNDS_URL,
            json={"payment_id": paid.payment_id, "reason": "Want the rest back too", "amount": "400.00"},
            headers=as_actor(CUSTOMER, "customer"),
        )

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "REFUND_EXCEEDS_CAPTURED"
        assert body["errors"]["available"] == "300.00"

    def test_approve_is_admin_only(self, client, pending_refund):
        response = client.post(
            f"{REFUNDS_URL}/{pending_refund['id']}/approve", json={}, headers=as_actor(CUSTOMER, "customer")
        )

        assert response.status_code == 403

    def test_admin_approves(self, client, gateway, pending_refund):
        response = client.post(
            f"{REFUNDS_URL}/{pending_refund['id']}/approve",
            json={"note": "Verified with provider"},
            headers=as_actor(ADMIN, "admin"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "processed"
        assert data["gateway_refund_id"].startswith("rfnd_")
        assert data["admin_response"]["action"] == "approve"
        assert gateway.refund_count() == 1

    def test_admin_rejects(self, client, pending_refund):
        response = client.post(
            f"{REFUNDS_URL}/{pending_refund['id']}/reject",
            json={"reason": "Session was delivered in full"},
            headers=as_actor(ADMIN, "admin"),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    def test_list_for_payment(self, client, paid, pending_refund):
        response = client.get(
            REFUNDS_URL, params={"payment_id": paid.payment_id}, headers=as_actor(CUSTOMER, "customer")
        )

        assert response.status_code == 200
        assert [item["id"] for item in response.json()["items"]] == [pending_refund["id"]]

    def test_other_customers_cannot_see_refund(self, client, pending_refund):
        response = client.get(
            f"{REFUNDS_URL}/{pending_refund['id']}", headers=as_actor(OTHER_CUSTOMER, "customer")
        )

        assert response.status_code == 403
