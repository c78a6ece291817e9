from __future__ import annotations

import logging
import time
from typing import Iterable, Optional

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ndc_gateway.middleware.request_context import get_context
from ndc_gateway.telemetry.metrics import HTTP_IN_FLIGHT, record_http_request

logger = logging.getLogger("access")

SKIP_PATHS = frozenset({"/health", "/ready", "/live", "/metrics", "/favicon.ico"})


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class AccessLogMiddleware:
    """One structured log line and one metrics sample per completed request."""

    def __init__(self, app: ASGIApp, *, skip_paths: Optional[Iterable[str]] = None) -> None:
        self.app = app
        self.skip_paths = frozenset(skip_paths) if skip_paths is not None else SKIP_PATHS

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path", "") in self.skip_paths:
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "?")
        path = scope.get("path", "?")
        status = {"code": 500}
        start = time.perf_counter()
        finished: Optional[float] = None

        async def send_wrapper(message: Message) -> None:
            nonlocal finished
            if message["type"] == "http.response.start":
                status["code"] = int(message["status"])
            await send(message)
            # Duration ends at the last body chunk; the app may keep running after a 504.
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                if finished is None:
                    finished = time.perf_counter()

        HTTP_IN_FLIGHT.inc()
        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            HTTP_IN_FLIGHT.dec()
            duration = (finished or time.perf_counter()) - start
            record_http_request(method, path, status["code"], duration)
            ctx = get_context()
            duration_ms = round(duration * 1000, 2)
            logger.log(
                _level_for(status["code"]),
                "%s %s %s %sms",
                method,
                path,
                status["code"],
                duration_ms,
                extra={
                    "type": "request_complete",
                    "method": method,
                    "path": path,
                    "status_code": status["code"],
                    "duration_ms": duration_ms,
                    "correlation_id": ctx.correlation_id if ctx else None,
                    "client_ip": ctx.client_ip if ctx else None,
                    "transaction_id": ctx.transaction_id if ctx else None,
                },
            )
