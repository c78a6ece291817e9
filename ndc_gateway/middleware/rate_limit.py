from __future__ import annotations

import math
from typing import Iterable, Optional

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ndc_gateway.errors import RateLimitedError
from ndc_gateway.services.ratelimit import TokenBucketLimiter
from ndc_gateway.telemetry.errors import error_response
from ndc_gateway.telemetry.metrics import RATE_LIMITED, route_label

# --------------------------- Constants / defaults ----------------------------

PROBE_PATHS = frozenset({"/health", "/ready", "/live", "/metrics"})


def _client_key(scope: Scope) -> str:
    headers = Headers(scope=scope)
    forwarded = headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip() if forwarded else ""
    if first:
        return f"ip:{first}"
    client = scope.get("client")
    return f"ip:{client[0]}" if client and client[0] else "ip:unknown"


class RateLimitMiddleware:
    """Token-bucket rate limiter per client IP; probes always pass."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        limiter: TokenBucketLimiter,
        skip_paths: Optional[Iterable[str]] = None,
    ) -> None:
        self.app = app
        self.limiter = limiter
        self.skip_paths = frozenset(skip_paths) if skip_paths is not None else PROBE_PATHS

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path", "") in self.skip_paths:
            await self.app(scope, receive, send)
            return

        limit = str(int(self.limiter.capacity))
        allowed, retry_after_ms, remaining = self.limiter.allow(_client_key(scope))

        if not allowed:
            RATE_LIMITED.labels(route=route_label(scope.get("path", ""))).inc()
            retry_after_s = max(1, int(math.ceil((retry_after_ms or 1000) / 1000.0)))
            response = error_response(
                RateLimitedError(retry_after_ms),
                headers={
                    "Retry-After": str(retry_after_s),
                    "X-RateLimit-Limit": limit,
                    "X-RateLimit-Remaining": "0",
                },
            )
            await response(scope, receive, send)
            return

        rem = str(max(0, int(math.floor(remaining + 1e-9))))

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                out = MutableHeaders(scope=message)
                out.setdefault("X-RateLimit-Limit", limit)
                out.setdefault("X-RateLimit-Remaining", rem)
            await send(message)

        await self.app(scope, receive, send_with_headers)


__all__ = ["PROBE_PATHS", "RateLimitMiddleware"]
