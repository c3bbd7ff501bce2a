from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = str(raw).strip().lower()
    if v in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Runtime settings, read once from the environment.

    Defaults are safe for a single local SQLite file.
    """

    sqlite_path: str
    busy_timeout_seconds: float
    max_retries: int
    retry_base_delay: float
    retry_factor: float
    retry_jitter: float
    strict_fields: bool
    log_json: bool
    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            sqlite_path=(os.getenv("PT_SQLITE_PATH") or "").strip() or "./properties.sqlite",
            busy_timeout_seconds=max(0.0, _env_float("PT_BUSY_TIMEOUT_SECONDS", 5.0)),
            max_retries=max(0, _env_int("PT_MAX_RETRIES", 4)),
            retry_base_delay=max(0.0, _env_float("PT_RETRY_BASE_DELAY", 0.05)),
            retry_factor=max(1.0, _env_float("PT_RETRY_FACTOR", 2.0)),
            retry_jitter=max(0.0, _env_float("PT_RETRY_JITTER", 0.01)),
            strict_fields=_env_bool("PT_STRICT_FIELDS", False),
            log_json=_env_bool("PT_LOG_JSON", False),
            log_level=(os.getenv("PT_LOG_LEVEL") or "").strip().upper() or "INFO",
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


def reset_settings_cache() -> None:
    """Test helper to force env re-read."""

    get_settings.cache_clear()
