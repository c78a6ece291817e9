# ndc_gateway/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ndc_gateway import __version__
from ndc_gateway.config import Settings, get_settings
from ndc_gateway.middleware.access_log import AccessLogMiddleware
from ndc_gateway.middleware.rate_limit import RateLimitMiddleware
from ndc_gateway.middleware.request_context import RequestContextMiddleware
from ndc_gateway.middleware.request_timeout import install_request_timeout
from ndc_gateway.routes import health
from ndc_gateway.routes import metrics as metrics_route
from ndc_gateway.services.ratelimit import TokenBucketLimiter
from ndc_gateway.telemetry.errors import register_error_handlers
from ndc_gateway.telemetry.logging import configure_root_logging

log = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "health", "description": "Liveness, readiness and status probes"},
    {"name": "metrics", "description": "Prometheus exposition"},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    log.info(
        "NDC gateway starting",
        extra={
            "environment": settings.ENV,
            "version": settings.VERSION,
            "request_timeout_ms": settings.REQUEST_TIMEOUT_MS,
            "rate_limit_enabled": settings.RATE_LIMIT_ENABLED,
        },
    )
    try:
        yield
    finally:
        log.info("NDC gateway shutting down")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_root_logging(
        settings.LOG_LEVEL,
        json_lines=settings.LOG_JSON,
        base={"service": settings.APP_NAME, "version": settings.VERSION, "env": settings.ENV},
        redact=settings.LOG_REDACT,
    )

    app = FastAPI(
        title="NDC Gateway",
        description="NDC airline API backend with per-request timeouts and resilience.",
        version=settings.VERSION or __version__,
        lifespan=lifespan,
        openapi_tags=OPENAPI_TAGS,
    )
    app.state.settings = settings

    register_error_handlers(app, production=settings.is_production)

    app.include_router(health.router)
    if settings.METRICS_ENABLED:
        app.include_router(metrics_route.router)

    # add_middleware prepends: the last one added runs outermost.
    if settings.RATE_LIMIT_ENABLED:
        app.add_middleware(
            RateLimitMiddleware,
            limiter=TokenBucketLimiter(
                settings.RATE_LIMIT_MAX_REQUESTS, settings.RATE_LIMIT_WINDOW_MS
            ),
        )
    install_request_timeout(app, settings.guard_config())
    if settings.ENABLE_REQUEST_LOGGING:
        app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestContextMiddleware)

    return app


app = create_app()
