"""Global JSON error handling with stable error codes and request correlation."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ndc_gateway.errors import AppError, ErrorCode
from ndc_gateway.middleware.request_context import (
    CORRELATION_ID_HEADER,
    REQUEST_ID_HEADER,
    RequestContext,
    get_context,
)

log = logging.getLogger(__name__)

# Map common HTTP statuses to stable machine-readable codes
_STATUS_TO_CODE = {
    400: ErrorCode.INVALID_REQUEST,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.RESOURCE_NOT_FOUND,
    422: ErrorCode.VALIDATION_ERROR,
    429: ErrorCode.RATE_LIMITED,
    503: ErrorCode.SERVICE_UNAVAILABLE,
    504: ErrorCode.TIMEOUT,
}


def _context_for(request: Request) -> Optional[RequestContext]:
    # Handlers run by ServerErrorMiddleware sit outside RequestContextMiddleware,
    # so the contextvar is already reset there; the scope still carries it.
    return get_context() or request.scope.get("request_context")


def _ids(ctx: Optional[RequestContext] = None) -> tuple[str, str]:
    """Best-effort (request_id, correlation_id) from the request context."""
    ctx = ctx or get_context()
    if ctx is not None:
        return ctx.transaction_id, ctx.correlation_id
    rid = str(uuid4())
    return rid, rid


def json_error(
    *,
    detail: str,
    status: int,
    code: Optional[str] = None,
    retryable: bool = False,
    details: Optional[Dict[str, Any]] = None,
    extra: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    ctx: Optional[RequestContext] = None,
) -> JSONResponse:
    rid, cid = _ids(ctx)
    fallback = _STATUS_TO_CODE.get(status, ErrorCode.INTERNAL_ERROR).value
    body: Dict[str, Any] = {
        "detail": detail,
        "code": code or fallback,
        "retryable": retryable,
        "request_id": rid,
        "correlation_id": cid,
    }
    if details:
        body["details"] = details
    if extra:
        body.update(extra)
    resp = JSONResponse(status_code=status, content=body, headers=headers)
    resp.headers[REQUEST_ID_HEADER] = rid
    resp.headers[CORRELATION_ID_HEADER] = cid
    return resp


def error_response(exc: AppError, *, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    """Render an AppError as the uniform JSON error body. Logs by severity."""
    if exc.is_server_error():
        log.error(exc.message, extra={"type": "app_error", "error": exc.to_dict()})
    else:
        log.warning(exc.message, extra={"type": "app_error", "error": exc.to_dict()})
    return json_error(
        detail=exc.message,
        status=exc.status_code,
        code=exc.code.value,
        retryable=exc.retryable,
        details=exc.details,
        headers=headers,
    )


def register_error_handlers(app: FastAPI, *, production: bool = False) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404 and exc.detail == "Not Found":
            detail = f"Route {request.method} {request.url.path} not found"
        else:
            detail = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        return json_error(
            detail=detail,
            status=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        log.warning("Request validation failed", extra={"type": "validation_error"})
        return json_error(
            detail="Validation failed",
            status=422,
            code=ErrorCode.VALIDATION_ERROR.value,
            extra={"errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception) -> JSONResponse:
        ctx = _context_for(request)
        log.error(
            "Unhandled error",
            exc_info=exc,
            extra={
                "type": "unhandled_error",
                "path": request.url.path,
                "correlation_id": ctx.correlation_id if ctx else None,
                "request_id": ctx.transaction_id if ctx else None,
            },
        )
        # Do not leak internals in production; logs carry details by request_id.
        detail = "An unexpected error occurred" if production else str(exc) or type(exc).__name__
        return json_error(
            detail=detail, status=500, code=ErrorCode.INTERNAL_ERROR.value, ctx=ctx
        )
