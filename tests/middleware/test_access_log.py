from __future__ import annotations

import asyncio
import logging

import pytest
from fastapi.responses import PlainTextResponse
from prometheus_client import REGISTRY
from starlette.testclient import TestClient

from ndc_gateway.config import Settings
from ndc_gateway.main import create_app


def _requests(route: str, status: str) -> float:
    return (
        REGISTRY.get_sample_value(
            "http_requests_total", {"method": "GET", "route": route, "status": status}
        )
        or 0.0
    )


def test_completed_request_is_logged_and_counted(client, caplog) -> None:
    caplog.set_level(logging.INFO, logger="access")
    before = _requests("/api", "200")

    r = client.get("/api", headers={"X-Correlation-ID": "corr-log"})
    assert r.status_code == 200

    records = [rec for rec in caplog.records if getattr(rec, "type", None) == "request_complete"]
    assert len(records) == 1
    rec = records[0]
    assert rec.levelno == logging.INFO
    assert rec.method == "GET"
    assert rec.path == "/api"
    assert rec.status_code == 200
    assert rec.duration_ms >= 0
    assert rec.transaction_id == r.headers["X-Request-ID"]
    assert _requests("/api", "200") == before + 1


def test_not_found_logs_at_warning(client, caplog) -> None:
    caplog.set_level(logging.INFO, logger="access")
    r = client.get("/nope")
    assert r.status_code == 404

    records = [rec for rec in caplog.records if getattr(rec, "type", None) == "request_complete"]
    assert [rec.levelno for rec in records] == [logging.WARNING]


def test_probe_paths_are_not_logged(client, caplog) -> None:
    caplog.set_level(logging.INFO, logger="access")
    assert client.get("/health").status_code == 200
    assert client.get("/ready").status_code == 200

    assert not [rec for rec in caplog.records if getattr(rec, "type", None) == "request_complete"]


@pytest.fixture()
def slow_client():
    app = create_app(Settings(REQUEST_TIMEOUT_MS=100))

    @app.get("/order-reshop")
    async def order_reshop() -> PlainTextResponse:
        await asyncio.sleep(0.4)
        return PlainTextResponse("late")

    return TestClient(app)


def test_timed_out_request_duration_ends_at_the_504(slow_client, caplog) -> None:
    caplog.set_level(logging.INFO, logger="access")

    r = slow_client.get("/order-reshop")
    assert r.status_code == 504

    records = [rec for rec in caplog.records if getattr(rec, "type", None) == "request_complete"]
    assert len(records) == 1
    assert records[0].status_code == 504
    assert records[0].levelno == logging.ERROR
    assert 90 <= records[0].duration_ms < 300
