from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ndc_gateway.config import Settings, get_settings
from ndc_gateway.services.circuit_breaker import all_circuit_breaker_stats

router = APIRouter(tags=["health"])

_STARTED = time.monotonic()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _uptime() -> str:
    return f"{int(time.monotonic() - _STARTED)}s"


def _settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else get_settings()


def _health_payload(settings: Settings) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "timestamp": _now_iso(),
        "uptime": _uptime(),
        "version": settings.VERSION,
        "environment": settings.ENV,
    }


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    return JSONResponse(_health_payload(_settings(request)))


@router.get("/ready")
async def ready() -> JSONResponse:
    return JSONResponse({"ready": True, "timestamp": _now_iso()})


@router.get("/live")
async def live() -> JSONResponse:
    return JSONResponse({"status": "ok"})


@router.get("/status")
async def status(request: Request) -> JSONResponse:
    """Health plus the state of outbound circuit breakers and the request guard."""
    settings = _settings(request)
    guard = settings.guard_config()
    payload = _health_payload(settings)
    payload["services"] = {"circuit_breakers": all_circuit_breaker_stats()}
    payload["request_guard"] = {
        "timeout_ms": guard.timeout_ms,
        "exempt_paths": sorted(guard.exempt_paths),
    }
    return JSONResponse(payload)


@router.get("/api")
async def api_index(request: Request) -> JSONResponse:
    settings = _settings(request)
    endpoints = sorted(
        {
            path
            for path in (getattr(route, "path", None) for route in request.app.router.routes)
            if path and not path.startswith(("/docs", "/redoc", "/openapi"))
        }
    )
    return JSONResponse({"name": settings.APP_NAME, "version": settings.VERSION, "endpoints": endpoints})
