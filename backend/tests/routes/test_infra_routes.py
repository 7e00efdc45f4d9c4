"""Health, readiness and metrics endpoints."""

from tests.helpers import CUSTOMER, as_actor, local_slot


class TestInfrastructureRoutes:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "slotpay"}

    def test_ready(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_metrics_exposition(self, client, provider, service):
        client.post(
            "/api/v1/orders",
            json={"provider_id": provider.id, "service_id": service.id, "start_at": local_slot(10).isoformat()},
            headers=as_actor(CUSTOMER, "customer"),
        )

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "slotpay_http_request_duration_seconds" in response.text
        assert "slotpay_slot_claims_total" in response.text

    def test_unknown_path_uses_problem_envelope(self, client):
        response = client.get("/api/v1/nowhere")

        assert response.status_code == 404
        body = response.json()
        assert body["title"] == "Not Found"
        assert body["instance"] == "/api/v1/nowhere"
