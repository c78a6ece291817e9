# ndc_gateway/config.py
from __future__ import annotations

import json
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ndc_gateway import __version__
from ndc_gateway.guard.deadline import GuardConfig

# Liveness/readiness/metrics probes must never wait behind the guard.
DEFAULT_EXEMPT_PATHS = "/health,/ready,/live,/metrics"


def _csv_to_list(value: str) -> List[str]:
    items = [part.strip() for part in value.split(",")]
    return [item for item in items if item]


def _json_or_csv_to_list(value: str) -> List[str]:
    text = value.strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            decoded = json.loads(text)
        except (json.JSONDecodeError, TypeError, ValueError):
            return _csv_to_list(text)
        if isinstance(decoded, str):
            return _csv_to_list(decoded)
        if isinstance(decoded, (list, tuple, set)):
            result: List[str] = []
            for item in decoded:
                piece = str(item).strip()
                if piece:
                    result.append(piece)
            return result
        return []
    return _csv_to_list(text)


class Settings(BaseSettings):
    # --- Identity / Build ---
    APP_NAME: str = Field(default="ndc-gateway")
    ENV: Literal["development", "production", "test"] = Field(default="development")
    VERSION: str = Field(default=__version__)

    # --- Logging ---
    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON: bool = Field(default=True)
    LOG_REDACT: bool = Field(default=True)
    ENABLE_REQUEST_LOGGING: bool = Field(default=True)

    # --- Request guard ---
    REQUEST_TIMEOUT_MS: int = Field(default=60000, gt=0)
    # comma-separated, or a JSON list
    TIMEOUT_EXEMPT_PATHS: str = Field(default=DEFAULT_EXEMPT_PATHS)

    # --- Metrics ---
    METRICS_ENABLED: bool = Field(default=True)

    # --- Rate limiting ---
    RATE_LIMIT_ENABLED: bool = Field(default=False)
    RATE_LIMIT_WINDOW_MS: int = Field(default=60000, gt=0)
    RATE_LIMIT_MAX_REQUESTS: int = Field(default=100, ge=1)

    # --- Retry policy ---
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1, le=10)
    RETRY_INITIAL_DELAY_MS: int = Field(default=1000, ge=0)
    RETRY_MAX_DELAY_MS: int = Field(default=10000, ge=0)
    RETRY_BACKOFF_FACTOR: float = Field(default=2.0, ge=1.0)

    # --- Circuit breaker ---
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    CIRCUIT_BREAKER_SUCCESS_THRESHOLD: int = Field(default=2, ge=1)
    CIRCUIT_BREAKER_TIMEOUT_MS: int = Field(default=30000, gt=0)
    CIRCUIT_BREAKER_RESET_TIMEOUT_MS: int = Field(default=60000, gt=0)

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def exempt_paths(self) -> List[str]:
        return _json_or_csv_to_list(self.TIMEOUT_EXEMPT_PATHS)

    def guard_config(self) -> GuardConfig:
        return GuardConfig(
            timeout_ms=self.REQUEST_TIMEOUT_MS,
            exempt_paths=frozenset(self.exempt_paths),
        )


def get_settings() -> Settings:
    return Settings()
