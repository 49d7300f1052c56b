"""
Runtime configuration for the order pipeline
Values come from the environment (a .env file is loaded by main.py)
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


@dataclass
class Settings:
    """Pipeline settings"""
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./atelier.db"))
    record_store: str = field(default_factory=lambda: os.getenv("RECORD_STORE", "sql").lower())
    feed_staleness_seconds: float = field(default_factory=lambda: _env_float("FEED_STALENESS_SECONDS", 60.0))
    feed_retry_initial_seconds: float = field(default_factory=lambda: _env_float("FEED_RETRY_INITIAL_SECONDS", 0.5))
    feed_retry_max_seconds: float = field(default_factory=lambda: _env_float("FEED_RETRY_MAX_SECONDS", 30.0))
    placeholder_image_url: str = field(
        default_factory=lambda: os.getenv("PLACEHOLDER_IMAGE_URL", "https://via.placeholder.com/400")
    )
    persist_diagnostics: bool = field(default_factory=lambda: _env_bool("PERSIST_DIAGNOSTICS", True))
    diagnostic_dedupe_seconds: float = field(default_factory=lambda: _env_float("DIAGNOSTIC_DEDUPE_SECONDS", 3600.0))
    rate_limit_enabled: bool = field(default_factory=lambda: _env_bool("RATE_LIMIT_ENABLED", True))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    cors_origins: List[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )
    host: str = field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(_env_float("PORT", 8000)))


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process"""
    return Settings()
