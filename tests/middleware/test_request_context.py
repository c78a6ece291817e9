from __future__ import annotations

import uuid

from fastapi import FastAPI
from starlette.testclient import TestClient

from ndc_gateway.middleware.request_context import (
    NO_CONTEXT,
    RequestContextMiddleware,
    elapsed_ms,
    get_context,
    get_correlation_id,
    get_request_id,
    set_operation,
)


def make_app() -> FastAPI:
    app = FastAPI()

    @app.get("/whoami")
    async def whoami() -> dict:
        ctx = get_context()
        return {
            "correlation_id": get_correlation_id(),
            "request_id": get_request_id(),
            "client_ip": ctx.client_ip if ctx else None,
            "operation": ctx.operation if ctx else None,
        }

    app.add_middleware(RequestContextMiddleware)
    return app


def test_incoming_correlation_id_is_kept_and_echoed():
    client = TestClient(make_app())
    r = client.get("/whoami", headers={"X-Correlation-ID": "abc-123"})
    assert r.status_code == 200
    assert r.json()["correlation_id"] == "abc-123"
    assert r.headers["X-Correlation-ID"] == "abc-123"
    assert r.headers["X-Request-ID"] == r.json()["request_id"]
    assert r.json()["operation"] == "GET /whoami"


def test_missing_correlation_id_is_generated():
    client = TestClient(make_app())
    r = client.get("/whoami")
    generated = r.headers["X-Correlation-ID"]
    assert str(uuid.UUID(generated)) == generated
    assert r.json()["correlation_id"] == generated


def test_request_ids_are_unique_per_request():
    client = TestClient(make_app())
    first = client.get("/whoami", headers={"X-Correlation-ID": "same"})
    second = client.get("/whoami", headers={"X-Correlation-ID": "same"})
    assert first.headers["X-Request-ID"] != second.headers["X-Request-ID"]


def test_forwarded_for_sets_client_ip():
    client = TestClient(make_app())
    r = client.get("/whoami", headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
    assert r.json()["client_ip"] == "203.0.113.7"


def test_outside_a_request_there_is_no_context():
    assert get_context() is None
    assert get_correlation_id() == NO_CONTEXT
    assert get_request_id() is None


def test_handlers_can_label_the_operation_and_read_elapsed_time():
    app = FastAPI()

    @app.get("/air-shopping")
    async def air_shopping() -> dict:
        set_operation("AirShopping")
        ctx = get_context()
        return {"operation": ctx.operation if ctx else None, "elapsed_ms": elapsed_ms()}

    app.add_middleware(RequestContextMiddleware)
    body = TestClient(app).get("/air-shopping").json()
    assert body["operation"] == "AirShopping"
    assert body["elapsed_ms"] >= 0.0
    assert elapsed_ms() == 0.0
