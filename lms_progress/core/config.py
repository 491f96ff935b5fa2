from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it’s easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


def _getint(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


@dataclass(frozen=True)
class RetrySettings:
    """Backoff policy for the completion retry queue (all delays in ms)."""

    initial_delay_ms: int = 1000
    multiplier: float = 2.0
    max_delay_ms: int = 30000
    max_jitter_ms: int = 1000
    max_retries: int = 3


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None
    retry: RetrySettings = RetrySettings()
    remote_call_timeout_ms: int = 10000
    attempt_log_max_entries: int = 50
    attempt_log_max_age_hours: int = 24
    bulk_batch_size: int = 5
    video_completion_threshold: int = 95

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    log_json_raw = _getenv("LOG_JSON", "false").lower()
    port_raw = _getenv("PORT", "8000")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    multiplier_raw = _getenv("RETRY_MULTIPLIER", "2")
    try:
        multiplier = float(multiplier_raw)
    except ValueError:
        raise ValueError(
            f"RETRY_MULTIPLIER must be a number (got {multiplier_raw!r})"
        ) from None
    if multiplier < 1:
        raise ValueError(f"RETRY_MULTIPLIER must be >= 1 (got {multiplier})")

    retry = RetrySettings(
        initial_delay_ms=_getint("RETRY_INITIAL_DELAY_MS", 1000),
        multiplier=multiplier,
        max_delay_ms=_getint("RETRY_MAX_DELAY_MS", 30000),
        max_jitter_ms=_getint("RETRY_MAX_JITTER_MS", 1000),
        max_retries=_getint("RETRY_MAX_RETRIES", 3),
    )

    bulk_batch_size = _getint("BULK_BATCH_SIZE", 5, minimum=1)
    if bulk_batch_size > 50:
        raise ValueError(f"BULK_BATCH_SIZE must be <= 50 (got {bulk_batch_size})")

    threshold = _getint("VIDEO_COMPLETION_THRESHOLD", 95)
    if threshold > 100:
        raise ValueError(
            f"VIDEO_COMPLETION_THRESHOLD must be <= 100 (got {threshold})"
        )

    database_url = _getenv("DATABASE_URL", "") or None
    redis_url = _getenv("REDIS_URL", "") or None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json_raw in ("1", "true", "yes"),
        port=port,
        database_url=database_url,
        redis_url=redis_url,
        retry=retry,
        remote_call_timeout_ms=_getint("REMOTE_CALL_TIMEOUT_MS", 10000, minimum=1),
        attempt_log_max_entries=_getint("ATTEMPT_LOG_MAX_ENTRIES", 50, minimum=1),
        attempt_log_max_age_hours=_getint("ATTEMPT_LOG_MAX_AGE_HOURS", 24, minimum=1),
        bulk_batch_size=bulk_batch_size,
        video_completion_threshold=threshold,
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
