"""
Per-request deadline ("request guard").

A ``Deadline`` bounds the wall-clock time of one unit of work. It owns a
single one-shot timer on the running event loop and resolves exactly one
way:

    CREATED -> RUNNING -> COMPLETED   release() before the timer fired
    CREATED -> RUNNING -> TIMED_OUT   timer fired first

Exempt paths (see ``GuardConfig.is_exempt``) never get a Deadline at all.

The class knows nothing about HTTP frameworks. Adapters translate their own
terminal events (response sent, handler raised, peer disconnected) into a
single ``release()`` call and supply an ``on_expire`` callback that routes
the timeout to their error-reporting path.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, FrozenSet, Optional

from ndc_gateway.telemetry.metrics import GUARD_ACTIVE, REQUEST_TIMEOUTS, route_label

log = logging.getLogger(__name__)


class GuardState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class GuardConfig:
    timeout_ms: float
    exempt_paths: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if isinstance(self.timeout_ms, bool) or not isinstance(self.timeout_ms, (int, float)):
            raise ValueError(f"timeout_ms must be a number, got {self.timeout_ms!r}")
        if not self.timeout_ms > 0:
            raise ValueError(f"timeout_ms must be > 0, got {self.timeout_ms!r}")
        # Accept any iterable of paths but store an immutable set.
        object.__setattr__(self, "exempt_paths", frozenset(self.exempt_paths))

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    def is_exempt(self, path: str) -> bool:
        return path in self.exempt_paths


ExpireCallback = Callable[["Deadline"], None]


class Deadline:
    """
    One cancelable timer for one unit of work.

    ``release()`` is idempotent and is a no-op once the timer has fired.
    ``on_expire`` runs at most once, synchronously inside the timer callback,
    so an adapter can flip its own "timed out" flag before any other task on
    the loop gets to run.
    """

    def __init__(
        self,
        timeout_ms: float,
        *,
        method: str = "",
        path: str = "",
        correlation_id: Optional[str] = None,
        on_expire: Optional[ExpireCallback] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.method = method
        self.path = path
        self.correlation_id = correlation_id
        self.fired = False
        self.state = GuardState.CREATED
        self._on_expire = on_expire
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def operation(self) -> str:
        return f"{self.method} {self.path}".strip()

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def done(self) -> bool:
        return self.state in (GuardState.COMPLETED, GuardState.TIMED_OUT)

    def start(self) -> "Deadline":
        if self.state is not GuardState.CREATED:
            raise RuntimeError(f"deadline already {self.state.value}")
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout_ms / 1000.0, self._expire)
        self.state = GuardState.RUNNING
        GUARD_ACTIVE.inc()
        return self

    def release(self) -> bool:
        """Cancel the timer. Returns True only for the call that actually released it."""
        if self.state is not GuardState.RUNNING:
            return False
        self.state = GuardState.COMPLETED
        self._disarm(cancel=True)
        return True

    def _disarm(self, *, cancel: bool) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            if cancel:
                handle.cancel()
            GUARD_ACTIVE.dec()

    def _expire(self) -> None:
        if self.state is not GuardState.RUNNING:
            return
        self.state = GuardState.TIMED_OUT
        self.fired = True
        self._disarm(cancel=False)

        log.error(
            "Request timed out after %sms",
            self.timeout_ms,
            extra={
                "type": "request_timeout",
                "path": self.path,
                "method": self.method,
                "timeout": self.timeout_ms,
                "correlation_id": self.correlation_id,
            },
        )
        REQUEST_TIMEOUTS.labels(method=self.method, route=route_label(self.path)).inc()

        if self._on_expire is not None:
            self._on_expire(self)

    def __repr__(self) -> str:
        return (
            f"Deadline(operation={self.operation!r}, timeout_ms={self.timeout_ms!r}, "
            f"state={self.state.value})"
        )
