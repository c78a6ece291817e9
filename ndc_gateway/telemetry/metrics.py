from __future__ import annotations

import re
from typing import Any, Final

from prometheus_client import REGISTRY, Counter, Gauge, Histogram

_UUID_RE: Final = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-"
    r"[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}$"
)
_HEX_RE: Final = re.compile(r"^[0-9a-fA-F]{8,}$")
_NUM_RE: Final = re.compile(r"^[0-9]{4,}$")
_ULID_RE: Final = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")
# Order ids and PNR locators are six-character alphanumerics.
_LOCATOR_RE: Final = re.compile(r"^[A-Z0-9]{6}$")
_MAX_SEGMENTS: Final = 6


def route_label(path: str) -> str:
    """
    Clamp a raw URL path to a low-cardinality Prometheus label.

    Dynamic segments (UUID/ULID/hex/long numbers/record locators) collapse to
    ``:id``, overly long segments to ``:seg``; deep paths are truncated.
    """
    if not path:
        return "other"
    trimmed = path.split("?", 1)[0]
    segs: list[str] = []
    for segment in trimmed.split("/"):
        if not segment:
            continue
        if _UUID_RE.match(segment) or _ULID_RE.match(segment):
            segs.append(":id")
        elif len(segment) > 32:
            segs.append(":seg")
        elif _NUM_RE.match(segment) or _HEX_RE.match(segment) or _LOCATOR_RE.match(segment):
            segs.append(":id")
        else:
            segs.append(segment)
        if len(segs) >= _MAX_SEGMENTS:
            segs.append("...")
            break
    return "/" + "/".join(segs) if segs else "/"


def _get_or_create_metric(factory: Any, name: str, documentation: str, **kwargs: Any) -> Any:
    """
    Prometheus helper that tolerates re-registration across tests
    (module reloads would otherwise raise "Duplicated timeseries").
    """
    try:
        return factory(name, documentation, **kwargs)
    except ValueError:
        existing = getattr(REGISTRY, "_names_to_collectors", {}).get(name)
        if existing is None and factory is Counter:
            existing = getattr(REGISTRY, "_names_to_collectors", {}).get(f"{name}_total")
        if existing is not None:
            return existing
        raise


# ---- Request guard ------------------------------------------------------------

REQUEST_TIMEOUTS = _get_or_create_metric(
    Counter,
    "request_timeouts_total",
    "Requests that exceeded the configured request timeout",
    labelnames=("method", "route"),
)

GUARD_ACTIVE = _get_or_create_metric(
    Gauge,
    "request_guard_active",
    "Request deadlines currently armed",
)

# ---- HTTP ---------------------------------------------------------------------

HTTP_IN_FLIGHT = _get_or_create_metric(
    Gauge,
    "http_requests_in_flight",
    "HTTP requests currently being served",
)

HTTP_REQUESTS = _get_or_create_metric(
    Counter,
    "http_requests_total",
    "HTTP responses by method, route and status code",
    labelnames=("method", "route", "status"),
)

HTTP_LATENCY = _get_or_create_metric(
    Histogram,
    "http_request_duration_seconds",
    "HTTP request latency seconds",
    labelnames=("method", "route"),
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

RATE_LIMITED = _get_or_create_metric(
    Counter,
    "rate_limited_total",
    "Requests rejected by the rate limiter",
    labelnames=("route",),
)

# ---- Resilience ---------------------------------------------------------------

RETRY_ATTEMPTS = _get_or_create_metric(
    Counter,
    "retry_attempts_total",
    "Retries scheduled after a failed attempt",
    labelnames=("operation",),
)

CIRCUIT_BREAKER_OPERATIONS = _get_or_create_metric(
    Counter,
    "circuit_breaker_operations_total",
    "Circuit breaker call outcomes",
    labelnames=("name", "result"),
)

CIRCUIT_BREAKER_TRIPS = _get_or_create_metric(
    Counter,
    "circuit_breaker_trips_total",
    "Transitions of a circuit breaker into the OPEN state",
    labelnames=("name",),
)


def record_http_request(method: str, path: str, status: int, duration_s: float) -> None:
    route = route_label(path)
    HTTP_REQUESTS.labels(method=method, route=route, status=str(status)).inc()
    HTTP_LATENCY.labels(method=method, route=route).observe(duration_s)


__all__ = [
    "CIRCUIT_BREAKER_OPERATIONS",
    "CIRCUIT_BREAKER_TRIPS",
    "GUARD_ACTIVE",
    "HTTP_IN_FLIGHT",
    "HTTP_LATENCY",
    "HTTP_REQUESTS",
    "RATE_LIMITED",
    "REQUEST_TIMEOUTS",
    "RETRY_ATTEMPTS",
    "record_http_request",
    "route_label",
]
