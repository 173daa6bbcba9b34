from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it’s easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


def _getenv_int(name: str, default: int, *, minimum: int | None = 1) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


def _getenv_bool(name: str, default: bool) -> bool:
    raw = _getenv(name, "true" if default else "false").lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None

    # Progress derivation
    progress_max_statements: int = 5000
    progress_max_gap_seconds: int = 300
    progress_expected_statements: int = 80
    progress_sync_min_interval_seconds: int = 60
    progress_sync_max_keys: int = 50_000

    # Verb statistics
    verb_stats_max_entries: int = 10_000

    # Storage retries
    store_retry_attempts: int = 3
    store_retry_base_delay_ms: int = 1000

    statement_id_prefix: str = "http://lms.example.com/statements/"

    # JSON list of {"id", "activityId", "title"} seeding the course lookup
    course_catalog_file: str | None = None

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

    database_url = _getenv("DATABASE_URL", "") or None
    redis_url = _getenv("REDIS_URL", "") or None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getenv_bool("LOG_JSON", False),
        port=port,
        database_url=database_url,
        redis_url=redis_url,
        progress_max_statements=_getenv_int("PROGRESS_MAX_STATEMENTS", 5000),
        progress_max_gap_seconds=_getenv_int("PROGRESS_MAX_GAP_SECONDS", 300),
        progress_expected_statements=_getenv_int("PROGRESS_EXPECTED_STATEMENTS", 80),
        # <= 0 turns the throttle off
        progress_sync_min_interval_seconds=_getenv_int(
            "PROGRESS_SYNC_MIN_INTERVAL_SECONDS", 60, minimum=None
        ),
        progress_sync_max_keys=_getenv_int("PROGRESS_SYNC_MAX_KEYS", 50_000),
        verb_stats_max_entries=_getenv_int("VERB_STATS_MAX_ENTRIES", 10_000),
        store_retry_attempts=_getenv_int("STORE_RETRY_ATTEMPTS", 3),
        store_retry_base_delay_ms=_getenv_int(
            "STORE_RETRY_BASE_DELAY_MS", 1000, minimum=0
        ),
        statement_id_prefix=_getenv(
            "STATEMENT_ID_PREFIX", "http://lms.example.com/statements/"
        ),
        course_catalog_file=_getenv("COURSE_CATALOG_FILE", "") or None,
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
