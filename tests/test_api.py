import base64

import pytest
from fastapi.testclient import TestClient

from dosync.api import create_app
from dosync.metrics import MetricsCollector
from dosync.settings import Settings


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


AUTH = _basic_auth("admin", "pw")


@pytest.fixture()
def metrics(tmp_path):
    m = MetricsCollector(str(tmp_path / "api.db"))
    ok = m.record_deployment_start("web", "1.1.0")
    m.record_deployment_success(ok, 4.0)
    bad = m.record_deployment_start("web", "1.2.0")
    m.record_deployment_failure(bad, "unhealthy", 2.0)
    m.record_rollback(bad)
    m.log_event("INFO", "Updated 1.0.0 -> 1.1.0", "web", "1.1.0")
    return m


@pytest.fixture()
def client(metrics):
    app = create_app(metrics, Settings(dashboard_password="pw"))
    with TestClient(app) as c:
        yield c


def test_dashboard_requires_basic_auth(client):
    assert client.get("/api/services").status_code == 401
    assert client.get("/api/services", headers=_basic_auth("admin", "wrong")).status_code == 401
    assert client.get("/api/services", headers=AUTH).status_code == 200


def test_health_is_public(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"


def test_services_summary(client):
    body = client.get("/api/services", headers=AUTH).json()
    assert len(body) == 1
    web = body[0]
    assert web["service"] == "web"
    assert web["success_rate"] == 0.5
    assert web["rollback_count"] == 1
    assert web["last_deployment"]["version"] == "1.2.0"


def test_deployments_and_stats(client):
    r = client.get("/api/services/web/deployments?limit=1", headers=AUTH)
    assert r.status_code == 200
    assert [d["version"] for d in r.json()] == ["1.2.0"]
    stats = client.get("/api/services/web/stats", headers=AUTH).json()
    assert stats["average_deployment_time_s"] == 4.0
    assert client.get("/api/services/ghost/deployments", headers=AUTH).status_code == 404
    assert client.get("/api/services/ghost/stats", headers=AUTH).status_code == 404


def test_events(client):
    events = client.get("/api/events", headers=AUTH).json()
    assert events[0]["service_name"] == "web"
    assert events[0]["level"] == "INFO"


def test_no_password_locks_dashboard(metrics):
    app = create_app(metrics, Settings(dashboard_password=None))
    with TestClient(app) as c:
        assert c.get("/api/services", headers=_basic_auth("admin", "")).status_code == 401
