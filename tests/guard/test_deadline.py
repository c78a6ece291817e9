from __future__ import annotations

import asyncio
import logging

import pytest
from prometheus_client import REGISTRY

from ndc_gateway.guard import Deadline, GuardConfig, GuardState


def _active() -> float:
    return REGISTRY.get_sample_value("request_guard_active") or 0.0


def _timeouts(method: str, route: str) -> float:
    return (
        REGISTRY.get_sample_value("request_timeouts_total", {"method": method, "route": route})
        or 0.0
    )


async def test_release_before_fire_completes_and_is_idempotent():
    fired: list[Deadline] = []
    deadline = Deadline(50, method="GET", path="/orders", on_expire=fired.append).start()
    assert deadline.state is GuardState.RUNNING
    assert deadline.armed

    assert deadline.release() is True
    assert deadline.release() is False
    assert deadline.release() is False

    await asyncio.sleep(0.08)
    assert deadline.state is GuardState.COMPLETED
    assert deadline.fired is False
    assert fired == []


async def test_fires_exactly_once_and_late_release_is_noop():
    fired: list[Deadline] = []
    deadline = Deadline(10, method="POST", path="/air-shopping", on_expire=fired.append).start()

    await asyncio.sleep(0.05)
    assert fired == [deadline]
    assert deadline.fired is True
    assert deadline.state is GuardState.TIMED_OUT
    assert not deadline.armed

    assert deadline.release() is False
    assert deadline.state is GuardState.TIMED_OUT
    await asyncio.sleep(0.02)
    assert fired == [deadline]


async def test_start_twice_raises():
    deadline = Deadline(1000).start()
    try:
        with pytest.raises(RuntimeError):
            deadline.start()
    finally:
        deadline.release()

    with pytest.raises(RuntimeError):
        deadline.start()


async def test_active_gauge_tracks_armed_deadlines():
    baseline = _active()
    a = Deadline(1000).start()
    b = Deadline(5).start()
    assert _active() == baseline + 2

    a.release()
    assert _active() == baseline + 1

    await asyncio.sleep(0.03)
    assert b.fired
    assert _active() == baseline


async def test_expiry_logs_and_counts(caplog):
    before = _timeouts("GET", "/orders/:id")
    caplog.set_level(logging.ERROR, logger="ndc_gateway.guard.deadline")

    Deadline(5, method="GET", path="/orders/ABC123", correlation_id="corr-1").start()
    await asyncio.sleep(0.03)

    records = [r for r in caplog.records if getattr(r, "type", None) == "request_timeout"]
    assert len(records) == 1
    rec = records[0]
    assert rec.levelno == logging.ERROR
    assert rec.path == "/orders/ABC123"
    assert rec.method == "GET"
    assert rec.timeout == 5
    assert rec.correlation_id == "corr-1"
    assert _timeouts("GET", "/orders/:id") == before + 1


async def test_independent_deadlines_do_not_interact():
    fired: list[str] = []
    fast = Deadline(10, path="/fast", on_expire=lambda d: fired.append(d.path)).start()
    slow = Deadline(200, path="/slow", on_expire=lambda d: fired.append(d.path)).start()

    await asyncio.sleep(0.04)
    assert fired == ["/fast"]
    assert slow.release() is True
    assert fast.state is GuardState.TIMED_OUT
    assert slow.state is GuardState.COMPLETED


def test_operation_label():
    assert Deadline(10, method="GET", path="/health").operation == "GET /health"
    assert Deadline(10).operation == ""


@pytest.mark.parametrize("bad", [0, -1, -0.5, True, "100", None])
def test_guard_config_rejects_non_positive_timeouts(bad):
    with pytest.raises(ValueError):
        GuardConfig(timeout_ms=bad)


def test_guard_config_exempt_paths_are_exact_matches():
    cfg = GuardConfig(timeout_ms=60000, exempt_paths=["/health", "/ready"])
    assert isinstance(cfg.exempt_paths, frozenset)
    assert cfg.is_exempt("/health")
    assert not cfg.is_exempt("/health/deep")
    assert not cfg.is_exempt("/api/health")
    assert cfg.timeout_s == 60.0
