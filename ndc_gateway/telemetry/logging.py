# ndc_gateway/telemetry/logging.py
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Mapping, MutableMapping, Optional, TextIO, Tuple

from ndc_gateway.middleware.request_context import get_context

REDACTED = "[REDACTED]"

# Keys masked wherever they appear in a log payload (case-insensitive).
SENSITIVE_KEYS: FrozenSet[str] = frozenset(
    {
        "password",
        "apipassword",
        "ndc_api_password",
        "x-ndc-api-password",
        "cardnumber",
        "card_number",
        "cvv",
        "authorization",
        "subscriptionkey",
        "subscription_key",
    }
)

# Attributes every LogRecord carries; anything else came in via ``extra``.
_RECORD_ATTRS: FrozenSet[str] = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def _utc(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _scrub(value: Any, redact: bool) -> Any:
    """Make ``value`` JSON-safe, masking sensitive keys in nested mappings."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, Mapping):
        out: Dict[str, Any] = {}
        for key, item in value.items():
            name = str(key)
            if redact and name.lower() in SENSITIVE_KEYS:
                out[name] = REDACTED
            else:
                out[name] = _scrub(item, redact)
        return out
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_scrub(item, redact) for item in value]
    return str(value)


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line.

    Every line carries ``ts``, ``level``, ``logger`` and ``message``, the
    static ``base`` fields (service, version, env), the current request's
    ``correlation_id``/``request_id`` and whatever was passed as ``extra``.
    """

    def __init__(self, base: Optional[Mapping[str, Any]] = None, *, redact: bool = True) -> None:
        super().__init__()
        self.base = dict(base or {})
        self.redact = redact

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": _utc(record.created),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(self.base)

        ctx = get_context()
        if ctx is not None:
            payload["correlation_id"] = ctx.correlation_id
            payload["request_id"] = ctx.transaction_id

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        if extra:
            payload.update(_scrub(extra, self.redact))

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


_configured = False


def configure_root_logging(
    level: int | str = "INFO",
    *,
    json_lines: bool = True,
    base: Optional[Mapping[str, Any]] = None,
    redact: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """Install a single stdout handler on the root logger. Later calls are no-ops."""
    global _configured
    if _configured:
        return

    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    if json_lines:
        handler.setFormatter(JsonFormatter(base, redact=redact))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )
    root.addHandler(handler)
    _configured = True


class ContextAdapter(logging.LoggerAdapter):
    """LoggerAdapter whose bound fields are merged under any per-call ``extra``."""

    def __init__(self, logger: logging.Logger, extra: Mapping[str, Any] | None = None):
        super().__init__(logger, dict(extra or {}))

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        merged: Dict[str, Any] = dict(self.extra or {})
        call_extra = kwargs.get("extra")
        if isinstance(call_extra, Mapping):
            merged.update(call_extra)
        kwargs["extra"] = merged
        return msg, kwargs


def bind(logger: logging.Logger | None = None, **context: Any) -> ContextAdapter:
    """
    Return ``logger`` (root if None) with ``context`` stamped on every record::

        log = bind(logging.getLogger(__name__), circuit_breaker="ndc-provider")
    """
    return ContextAdapter(logger or logging.getLogger(), context)


__all__ = [
    "ContextAdapter",
    "JsonFormatter",
    "REDACTED",
    "SENSITIVE_KEYS",
    "bind",
    "configure_root_logging",
]
