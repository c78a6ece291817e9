from __future__ import annotations

from starlette.testclient import TestClient

from ndc_gateway.config import Settings
from ndc_gateway.main import create_app
from ndc_gateway.services.circuit_breaker import get_circuit_breaker


def test_health(client) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["environment"] == "test"
    assert body["uptime"].endswith("s")
    assert body["timestamp"].endswith("Z")
    assert body["version"]


def test_ready_and_live(client) -> None:
    ready = client.get("/ready")
    assert ready.status_code == 200
    assert ready.json()["ready"] is True

    live = client.get("/live")
    assert live.status_code == 200
    assert live.json() == {"status": "ok"}


def test_status_reports_guard_and_breakers() -> None:
    get_circuit_breaker("ndc-provider")
    settings = Settings(REQUEST_TIMEOUT_MS=45000, TIMEOUT_EXEMPT_PATHS="/health,/live")
    client = TestClient(create_app(settings))

    body = client.get("/status").json()
    assert body["status"] == "healthy"
    assert body["request_guard"] == {"timeout_ms": 45000, "exempt_paths": ["/health", "/live"]}
    assert body["services"]["circuit_breakers"]["ndc-provider"]["state"] == "CLOSED"


def test_api_index_lists_endpoints(client) -> None:
    body = client.get("/api").json()
    assert body["name"] == "ndc-gateway"
    for path in ("/health", "/ready", "/live", "/status", "/api", "/metrics"):
        assert path in body["endpoints"]
    assert not any(p.startswith("/docs") for p in body["endpoints"])


def test_metrics_endpoint_exposes_guard_metrics(client) -> None:
    r = client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert "request_timeouts_total" in r.text
    assert "request_guard_active" in r.text


def test_metrics_can_be_disabled() -> None:
    client = TestClient(create_app(Settings(METRICS_ENABLED=False)))
    assert client.get("/metrics").status_code == 404
