from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ndc_gateway.errors import CircuitOpenError, TimeoutExceeded
from ndc_gateway.telemetry.logging import bind
from ndc_gateway.telemetry.metrics import CIRCUIT_BREAKER_OPERATIONS, CIRCUIT_BREAKER_TRIPS

T = TypeVar("T")

# Tests monkeypatch this to move time forward without sleeping.
_NOW: Callable[[], float] = time.monotonic


def _now_ms() -> float:
    return _NOW() * 1000.0


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Fail fast against a dependency that keeps failing.

    CLOSED: calls pass; ``failure_threshold`` consecutive failures open it.
    OPEN: calls are rejected with CircuitOpenError until ``reset_timeout_ms``
    has passed since the last failure, then one probe window starts.
    HALF_OPEN: ``success_threshold`` successes close it, any failure reopens.

    Every call is bounded by ``timeout_ms``; running over counts as a failure.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout_ms: int = 30000,
        reset_timeout_ms: int = 60000,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout_ms = timeout_ms
        self.reset_timeout_ms = reset_timeout_ms

        self.state = CircuitState.CLOSED
        self.failures = 0
        self.successes = 0
        self.last_failure_ms: Optional[float] = None
        self.next_attempt_ms: Optional[float] = None
        self._log = bind(logging.getLogger(__name__), circuit_breaker=name)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.state is CircuitState.OPEN:
            now = _now_ms()
            if self.next_attempt_ms is not None and now < self.next_attempt_ms:
                CIRCUIT_BREAKER_OPERATIONS.labels(name=self.name, result="rejected").inc()
                raise CircuitOpenError(self.name, int(self.next_attempt_ms - now))
            self._transition(CircuitState.HALF_OPEN)

        try:
            result = await asyncio.wait_for(operation(), timeout=self.timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            self._on_failure()
            raise TimeoutExceeded(f"circuit breaker {self.name}", self.timeout_ms) from None
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _on_success(self) -> None:
        CIRCUIT_BREAKER_OPERATIONS.labels(name=self.name, result="success").inc()
        if self.state is CircuitState.HALF_OPEN:
            self.successes += 1
            if self.successes >= self.success_threshold:
                self._transition(CircuitState.CLOSED)
        else:
            self.failures = 0

    def _on_failure(self) -> None:
        CIRCUIT_BREAKER_OPERATIONS.labels(name=self.name, result="failure").inc()
        self.failures += 1
        self.last_failure_ms = _now_ms()
        if self.state is CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self.state
        self.state = new_state

        if new_state is CircuitState.OPEN:
            self.next_attempt_ms = _now_ms() + self.reset_timeout_ms
            self.successes = 0
            CIRCUIT_BREAKER_TRIPS.labels(name=self.name).inc()
            self._log.warning(
                "Circuit breaker opened",
                extra={"failures": self.failures, "next_attempt_ms": self.next_attempt_ms},
            )
        elif new_state is CircuitState.HALF_OPEN:
            self.successes = 0
            self._log.info("Circuit breaker half-open, testing recovery")
        else:
            self.failures = 0
            self.successes = 0
            self.next_attempt_ms = None
            self._log.info("Circuit breaker closed, service recovered")

        self._log.debug(
            "Circuit breaker state change",
            extra={"from_state": old_state.value, "to_state": new_state.value},
        )

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.successes = 0
        self.last_failure_ms = None
        self.next_attempt_ms = None

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self.failures,
            "successes": self.successes,
            "last_failure_ms": self.last_failure_ms,
            "next_attempt_ms": self.next_attempt_ms,
        }


_BREAKERS: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str, **config: Any) -> CircuitBreaker:
    """Return the process-wide breaker for ``name``, creating it on first use."""
    breaker = _BREAKERS.get(name)
    if breaker is None:
        breaker = _BREAKERS[name] = CircuitBreaker(name, **config)
    return breaker


def circuit_breaker_from_settings(name: str, settings: Any) -> CircuitBreaker:
    return get_circuit_breaker(
        name,
        failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        success_threshold=settings.CIRCUIT_BREAKER_SUCCESS_THRESHOLD,
        timeout_ms=settings.CIRCUIT_BREAKER_TIMEOUT_MS,
        reset_timeout_ms=settings.CIRCUIT_BREAKER_RESET_TIMEOUT_MS,
    )


def all_circuit_breaker_stats() -> Dict[str, Dict[str, Any]]:
    return {name: breaker.stats() for name, breaker in _BREAKERS.items()}


def reset_circuit_breakers() -> None:
    _BREAKERS.clear()


__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "all_circuit_breaker_stats",
    "circuit_breaker_from_settings",
    "get_circuit_breaker",
    "reset_circuit_breakers",
]
