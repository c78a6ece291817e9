"""Structured application errors with stable machine-readable codes."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    # Client errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    RATE_LIMITED = "RATE_LIMITED"

    # System errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    TIMEOUT = "TIMEOUT"


class AppError(Exception):
    """
    Base for every error the service raises on purpose.

    Carries everything the error handlers need to build a uniform JSON
    response: the stable ``code``, the HTTP ``status_code``, the
    ``retryable`` flag for callers and optional ``details``.
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        self.details = details
        self.timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    def is_server_error(self) -> bool:
        return self.status_code >= 500


class ValidationFailed(AppError):
    code = ErrorCode.VALIDATION_ERROR
    status_code = 400


class NotFoundError(AppError):
    code = ErrorCode.RESOURCE_NOT_FOUND
    status_code = 404

    def __init__(self, resource: str, identifier: Optional[str] = None) -> None:
        if identifier:
            message = f'{resource} with identifier "{identifier}" not found'
        else:
            message = f"{resource} not found"
        super().__init__(message, details={"resource": resource, "identifier": identifier})


class RateLimitedError(AppError):
    code = ErrorCode.RATE_LIMITED
    status_code = 429
    retryable = True

    def __init__(self, retry_after_ms: Optional[int] = None) -> None:
        details = {"retry_after_ms": retry_after_ms} if retry_after_ms else None
        super().__init__("Rate limit exceeded. Please slow down.", details=details)


class ServiceUnavailableError(AppError):
    code = ErrorCode.SERVICE_UNAVAILABLE
    status_code = 503
    retryable = True


class CircuitOpenError(AppError):
    code = ErrorCode.CIRCUIT_OPEN
    status_code = 503
    retryable = True

    def __init__(self, service: str, retry_after_ms: Optional[int] = None) -> None:
        super().__init__(
            f"Service {service} is temporarily unavailable (circuit breaker open)",
            details={"service": service, "retry_after_ms": retry_after_ms},
        )
        self.service = service
        self.retry_after_ms = retry_after_ms


class TimeoutExceeded(AppError):
    """A unit of work ran past its configured deadline."""

    code = ErrorCode.TIMEOUT
    status_code = 504
    retryable = True

    def __init__(self, operation: str, timeout_ms: float) -> None:
        super().__init__(
            f"Operation {operation} timed out after {_fmt_ms(timeout_ms)}ms",
            details={"operation": operation, "timeout_ms": timeout_ms},
        )
        self.operation = operation
        self.timeout_ms = timeout_ms


class InternalError(AppError):
    code = ErrorCode.INTERNAL_ERROR
    status_code = 500

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        super().__init__(message)


def _fmt_ms(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value}"


__all__ = [
    "AppError",
    "CircuitOpenError",
    "ErrorCode",
    "InternalError",
    "NotFoundError",
    "RateLimitedError",
    "ServiceUnavailableError",
    "TimeoutExceeded",
    "ValidationFailed",
]
