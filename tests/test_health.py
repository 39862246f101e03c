from __future__ import annotations

from fastapi.testclient import TestClient

from automation_service import __version__


def test_health_endpoint_needs_no_api_key(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": __version__}
