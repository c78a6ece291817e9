# ndc_gateway/middleware/request_timeout.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ndc_gateway.errors import TimeoutExceeded
from ndc_gateway.guard.deadline import Deadline, GuardConfig
from ndc_gateway.middleware.request_context import CORRELATION_ID_HEADER, get_context
from ndc_gateway.telemetry.errors import error_response

_log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60000
DEFAULT_EXEMPT_PATHS = ("/health", "/ready", "/live", "/metrics")

TimeoutReporter = Callable[[TimeoutExceeded, Scope, Receive, Send], Awaitable[None]]


async def respond_with_error(exc: TimeoutExceeded, scope: Scope, receive: Receive, send: Send) -> None:
    """Default error-reporting path: the uniform JSON error body (HTTP 504)."""
    response = error_response(exc)
    await response(scope, receive, send)


class _UnitOfWork:
    """Response-side bookkeeping for one guarded request."""

    __slots__ = ("response_started", "timed_out")

    def __init__(self) -> None:
        self.response_started = False
        self.timed_out = False


def _correlation_id(scope: Scope) -> Optional[str]:
    ctx = get_context()
    if ctx is not None:
        return ctx.correlation_id
    return Headers(scope=scope).get(CORRELATION_ID_HEADER)


class RequestTimeoutMiddleware:
    """
    Bound how long a request may run before it is reported as timed out.

    - Exempt paths (probes, metrics) pass straight through, no timer.
    - Every other request gets its own Deadline, armed when the handler
      starts and released on the first terminal event: final response body
      sent, handler raised, or client disconnect seen on receive().
    - If the deadline fires before any response started, a TimeoutExceeded
      goes to the error-reporting path (504 by default). Anything the
      handler sends afterwards is dropped.
    - If a response had already started, the timeout is only logged.

    The handler is never cancelled by the guard; after a timeout it keeps
    running to completion and its output is discarded.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        config: Optional[GuardConfig] = None,
        timeout_ms: Optional[float] = None,
        exempt_paths: Optional[Iterable[str]] = None,
        reporter: Optional[TimeoutReporter] = None,
    ) -> None:
        self.app = app
        if config is None:
            config = GuardConfig(
                timeout_ms=timeout_ms if timeout_ms is not None else DEFAULT_TIMEOUT_MS,
                exempt_paths=exempt_paths if exempt_paths is not None else DEFAULT_EXEMPT_PATHS,
            )
        self.config = config
        self._report = reporter or respond_with_error

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or self.config.is_exempt(scope.get("path", "")):
            await self.app(scope, receive, send)
            return

        loop = asyncio.get_running_loop()
        unit = _UnitOfWork()
        expired: asyncio.Future[TimeoutExceeded] = loop.create_future()

        def on_expire(deadline: Deadline) -> None:
            if unit.response_started:
                # A response is already on the wire; nothing left to report.
                return
            unit.timed_out = True
            expired.set_result(TimeoutExceeded(deadline.operation, deadline.timeout_ms))

        deadline = Deadline(
            self.config.timeout_ms,
            method=scope.get("method", ""),
            path=scope.get("path", ""),
            correlation_id=_correlation_id(scope),
            on_expire=on_expire,
            loop=loop,
        )

        async def guarded_receive() -> Message:
            message = await receive()
            if message["type"] == "http.disconnect":
                deadline.release()
            return message

        async def guarded_send(message: Message) -> None:
            if unit.timed_out:
                return
            if message["type"] == "http.response.start":
                unit.response_started = True
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                deadline.release()

        handler: asyncio.Future[Any] = asyncio.ensure_future(
            self.app(scope, guarded_receive, guarded_send)
        )
        deadline.start()
        try:
            await asyncio.wait({handler, expired}, return_when=asyncio.FIRST_COMPLETED)
            if expired.done() and not expired.cancelled():
                await self._report(expired.result(), scope, receive, send)
            # Never preempt: in-flight work finishes even after a timeout.
            await handler
        finally:
            deadline.release()
            if not expired.done():
                expired.cancel()
            if not handler.done():
                # Only reached when this request itself was cancelled.
                handler.cancel()


def install_request_timeout(app: Any, config: GuardConfig) -> None:
    app.add_middleware(RequestTimeoutMiddleware, config=config)
    _log.debug(
        "request timeout installed",
        extra={"timeout_ms": config.timeout_ms, "exempt_paths": sorted(config.exempt_paths)},
    )


__all__ = [
    "DEFAULT_EXEMPT_PATHS",
    "DEFAULT_TIMEOUT_MS",
    "RequestTimeoutMiddleware",
    "TimeoutReporter",
    "install_request_timeout",
    "respond_with_error",
]
