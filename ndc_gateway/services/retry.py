"""
Exponential backoff retry with jitter for outbound calls.

Delay before retry ``n`` (1-based attempt that just failed)::

    capped = min(base * factor ** (n - 1), max)
    delay  = capped + uniform(0, jitter * capped)
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, Optional, TypeVar

import httpx

from ndc_gateway.errors import AppError
from ndc_gateway.middleware.request_context import get_correlation_id
from ndc_gateway.telemetry.metrics import RETRY_ATTEMPTS

log = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_MESSAGE = re.compile(
    r"timeout|timed out|ECONNRESET|ETIMEDOUT|socket hang up|connection|network|rate limit",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_factor: float = 2.0
    jitter_factor: float = 0.3
    retryable_status_codes: FrozenSet[int] = field(
        default_factory=lambda: frozenset({408, 429, 500, 502, 503, 504})
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay_ms=settings.RETRY_INITIAL_DELAY_MS,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
            backoff_factor=settings.RETRY_BACKOFF_FACTOR,
        )

    def delay_ms(self, attempt: int) -> int:
        exponential = self.base_delay_ms * (self.backoff_factor ** (attempt - 1))
        capped = min(exponential, self.max_delay_ms)
        jitter = capped * self.jitter_factor * random.uniform(0.0, 1.0)
        return int(capped + jitter)

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, AppError):
            return exc.retryable
        if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
            return True
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code in self.retryable_status_codes
        if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return True
        status = getattr(exc, "status_code", None)
        if isinstance(status, int) and status in self.retryable_status_codes:
            return True
        return bool(_RETRYABLE_MESSAGE.search(str(exc)))


DEFAULT_POLICY = RetryPolicy()


async def retry(
    operation: Callable[[], Awaitable[T]],
    name: str = "operation",
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Await ``operation()`` until it succeeds, the error is not retryable, or
    attempts run out. The last error is re-raised unchanged.
    """
    policy = policy or DEFAULT_POLICY
    attempt = 1
    while True:
        try:
            result = await operation()
        except Exception as exc:
            if attempt >= policy.max_attempts or not policy.is_retryable(exc):
                log.error(
                    "Operation failed, no more retries",
                    extra={
                        "operation": name,
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                        "error": str(exc),
                    },
                )
                raise
            delay = policy.delay_ms(attempt)
            RETRY_ATTEMPTS.labels(operation=name).inc()
            log.warning(
                "Operation failed, retrying",
                extra={
                    "operation": name,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "next_retry_ms": delay,
                    "error": str(exc),
                    "correlation_id": get_correlation_id(),
                },
            )
            await sleep(delay / 1000.0)
            attempt += 1
            continue

        if attempt > 1:
            log.info("Retry succeeded", extra={"operation": name, "attempt": attempt})
        return result


__all__ = ["DEFAULT_POLICY", "RetryPolicy", "retry"]
