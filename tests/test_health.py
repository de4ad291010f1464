from __future__ import annotations

from fastapi.testclient import TestClient


def test_health_endpoints(client: TestClient) -> None:
    for route in ("/health", "/healthz", "/live"):
        response = client.get(route)
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


def test_callback_endpoint_reports_active(client: TestClient) -> None:
    response = client.get("/api/webhooks/design-callback")
    assert response.status_code == 200
    payload = response.json()
    assert payload["endpoint"] == "design-callback"
    assert payload["status"] == "active"
