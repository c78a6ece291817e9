from __future__ import annotations

import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Optional

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

CORRELATION_ID_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER = "X-Request-ID"

NO_CONTEXT = "no-context"


@dataclass
class RequestContext:
    correlation_id: str
    transaction_id: str
    start_time: float = field(default_factory=time.monotonic)
    operation: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None


_CONTEXT: ContextVar[Optional[RequestContext]] = ContextVar("request_context", default=None)


def get_context() -> Optional[RequestContext]:
    """Return the context of the request being served, if any."""
    return _CONTEXT.get()


def get_correlation_id() -> str:
    ctx = _CONTEXT.get()
    return ctx.correlation_id if ctx else NO_CONTEXT


def get_request_id() -> Optional[str]:
    """
    Return the per-request transaction id set by RequestContextMiddleware.
    """
    ctx = _CONTEXT.get()
    return ctx.transaction_id if ctx else None


def elapsed_ms() -> float:
    ctx = _CONTEXT.get()
    return (time.monotonic() - ctx.start_time) * 1000.0 if ctx else 0.0


def set_operation(operation: str) -> None:
    ctx = _CONTEXT.get()
    if ctx is not None:
        ctx.operation = operation


def _client_ip(scope: Scope, headers: Headers) -> str:
    forwarded = headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip() if forwarded else ""
    if first:
        return first
    client = scope.get("client")
    if client and client[0]:
        return str(client[0])
    return "unknown"


class RequestContextMiddleware:
    """
    Runs every HTTP request inside its own RequestContext:
    - Accept an incoming X-Correlation-ID if present, else generate a UUID4.
    - Always generate a fresh transaction id (echoed as X-Request-ID).
    - Expose both via contextvar for logging, errors and the request guard.
    - Echo both back on the response headers.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        raw = (headers.get(CORRELATION_ID_HEADER) or "").strip()
        ctx = RequestContext(
            correlation_id=raw or str(uuid.uuid4()),
            transaction_id=str(uuid.uuid4()),
            operation=f"{scope.get('method', '')} {scope.get('path', '')}",
            client_ip=_client_ip(scope, headers),
            user_agent=headers.get("user-agent", "unknown"),
        )
        scope["request_context"] = ctx
        scope["request_id"] = ctx.transaction_id

        async def send_with_ids(message: Message) -> None:
            if message["type"] == "http.response.start":
                out = MutableHeaders(scope=message)
                if CORRELATION_ID_HEADER not in out:
                    out[CORRELATION_ID_HEADER] = ctx.correlation_id
                if REQUEST_ID_HEADER not in out:
                    out[REQUEST_ID_HEADER] = ctx.transaction_id
            await send(message)

        token = _CONTEXT.set(ctx)
        try:
            await self.app(scope, receive, send_with_ids)
        finally:
            # Always reset contextvar to avoid leakage across requests.
            _CONTEXT.reset(token)


__all__ = [
    "CORRELATION_ID_HEADER",
    "REQUEST_ID_HEADER",
    "RequestContext",
    "RequestContextMiddleware",
    "elapsed_ms",
    "get_context",
    "get_correlation_id",
    "get_request_id",
    "set_operation",
]
