from fastapi.testclient import TestClient

import subsync.api.health as health_api
from subsync.main import app

client = TestClient(app)


def test_healthz_always_ok():
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_ok_with_billing_tables():
    """conftest created the tables on the in-memory database."""
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_reports_missing_tables(monkeypatch):
    class FakeInspector:
        def has_table(self, name):
            return name != "billing_events"

    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector())

    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert "billing_events" in resp.json().get("detail", "")


def test_readyz_handles_db_down(monkeypatch):
    def boom():
        raise RuntimeError("db down")

    monkeypatch.setattr(health_api, "get_engine", boom)

    resp = client.get("/readyz")
    body = resp.json()
    assert resp.status_code == 503
    assert body.get("status") == "error"
    assert "database" in body.get("detail", "")
