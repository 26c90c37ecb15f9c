"""
Gapper Client Configuration

Centralized configuration. All environment variables MUST be read here.
No os.getenv() calls allowed elsewhere.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field

from gapper_client.core.types import GapperClientError

DEFAULT_API_BASE_URL = "http://localhost:8000"


class ConfigurationError(GapperClientError):
    """Raised when required configuration is missing or invalid."""


def _optional_env(name: str, default: str = "") -> str:
    """Get an optional environment variable with a default."""
    return os.environ.get(name, default)


def _optional_env_int(name: str, default: int) -> int:
    """Get an optional integer environment variable with a default."""
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid integer value for {name}: {value}")


def _optional_env_bool(name: str, default: bool) -> bool:
    """Get an optional boolean environment variable with a default."""
    value = os.environ.get(name)
    if not value:
        return default
    return value.lower() in ("true", "1", "yes")


def _normalize_base_url(raw: str) -> str:
    source = raw.strip() or DEFAULT_API_BASE_URL
    return source[:-1] if source.endswith("/") else source


@dataclass(frozen=True)
class ApiConfig:
    """Backend HTTP configuration."""
    base_url: str = DEFAULT_API_BASE_URL
    api_key: str = ""
    timeout_ms: int = 8000

    def __post_init__(self) -> None:
        object.__setattr__(self, "base_url", _normalize_base_url(self.base_url))
        if self.timeout_ms < 1000:
            object.__setattr__(self, "timeout_ms", 1000)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(frozen=True)
class StreamConfig:
    """Push stream and fallback polling configuration."""
    enabled: bool = True
    max_reconnect_attempts: int = 8
    initial_backoff_ms: int = 500
    max_backoff_ms: int = 15_000
    poll_interval_ms: int = 5_000
    replay: int = 5
    heartbeat_sec: int = 30
    card_refresh_cooldown_ms: int = 3_000
    pending_refresh_poll_ms: int = 2_500
    pending_refresh_timeout_ms: int = 120_000

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def pending_refresh_poll_seconds(self) -> float:
        return self.pending_refresh_poll_ms / 1000.0

    @property
    def pending_refresh_timeout_seconds(self) -> float:
        return self.pending_refresh_timeout_ms / 1000.0


@dataclass(frozen=True)
class CacheConfig:
    """Capacities for the per-session eviction caches."""
    card_entries: int = 50
    etag_entries: int = 50


@dataclass(frozen=True)
class Settings:
    """Root configuration container."""
    api: ApiConfig = field(default_factory=ApiConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    timezone: str = "America/New_York"


def load_settings() -> Settings:
    """Load all settings from environment variables.

    Everything has a default so the dev console and tests work without a
    .env file. The API key is optional; the backend decides whether an
    anonymous client is acceptable.
    """
    api = ApiConfig(
        base_url=_optional_env("GAPPER_API_BASE_URL", DEFAULT_API_BASE_URL),
        api_key=_optional_env("GAPPER_API_KEY", "").strip(),
        timeout_ms=_optional_env_int("GAPPER_API_TIMEOUT_MS", 8000),
    )

    stream = StreamConfig(
        enabled=_optional_env_bool("GAPPER_STREAM_ENABLED", True),
        max_reconnect_attempts=_optional_env_int("GAPPER_STREAM_MAX_RECONNECT_ATTEMPTS", 8),
        poll_interval_ms=_optional_env_int("GAPPER_STREAM_POLL_INTERVAL_MS", 5_000),
        replay=_optional_env_int("GAPPER_STREAM_REPLAY", 5),
        heartbeat_sec=_optional_env_int("GAPPER_STREAM_HEARTBEAT_SEC", 30),
    )

    cache = CacheConfig(
        card_entries=_optional_env_int("GAPPER_CARD_CACHE_SIZE", 50),
        etag_entries=_optional_env_int("GAPPER_ETAG_CACHE_SIZE", 50),
    )

    return Settings(
        api=api,
        stream=stream,
        cache=cache,
        timezone=_optional_env("GAPPER_TIMEZONE", "America/New_York"),
    )
