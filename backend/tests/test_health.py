from fastapi.testclient import TestClient

from schemaflow.main import app


def test_health_endpoint_returns_payload(monkeypatch) -> None:
    from schemaflow.services import health as health_service

    monkeypatch.setattr(health_service, "check_database", lambda _db: True)

    client = TestClient(app)
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": True}


def test_health_reports_degraded_database(monkeypatch) -> None:
    from schemaflow.services import health as health_service

    monkeypatch.setattr(health_service, "check_database", lambda _db: False)

    client = TestClient(app)
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "degraded", "database": False}
