"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kvguard.adapters.store.keys import prefixes_overlap


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and os.getenv("TESTING") != "true":
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class StoreSettings(BaseSettings):
    """Shared key-value store connection settings."""

    backend: Literal["redis", "memory"] = Field(
        "redis",
        description="Store backend: 'redis' for deployments, 'memory' for local runs/tests",
    )
    redis_url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL",
    )
    operation_timeout_seconds: float = Field(
        2.0,
        description="Upper bound for any single store call",
        gt=0,
    )
    socket_timeout_seconds: float = Field(
        1.0,
        description="Redis socket read/write timeout",
        gt=0,
    )
    connect_timeout_seconds: float = Field(
        1.0,
        description="Redis connect timeout",
        gt=0,
    )
    max_connections: int = Field(
        50,
        description="Connection pool size (per process)",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        case_sensitive=False,
    )


class CacheSettings(BaseSettings):
    """Stampede-protected cache-aside settings."""

    namespace: str = Field(
        "cache",
        description="Prefix for data keys; lock keys become lock:<namespace>:<key>",
        min_length=1,
    )
    default_ttl_seconds: float = Field(
        600.0,
        description="Base TTL for cache entries before jitter",
        gt=0,
    )
    jitter_max_seconds: float = Field(
        100.0,
        description="Upper bound (exclusive) of the random TTL jitter",
        ge=0,
    )
    lock_ttl_seconds: float = Field(
        30.0,
        description="Population lock TTL; must exceed the worst-case loader latency",
        gt=0,
    )
    loader_timeout_seconds: float = Field(
        20.0,
        description="Timeout applied to the origin loader while the lock is held",
        gt=0,
    )
    max_attempts: int = Field(
        5,
        description="Attempts before giving up when another caller holds the lock",
        ge=1,
    )
    backoff_base_seconds: float = Field(
        0.05,
        description="First backoff interval between lock attempts",
        gt=0,
    )
    backoff_max_seconds: float = Field(
        0.5,
        description="Cap for any single backoff interval",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def _check_loader_fits_lock(self) -> "CacheSettings":
        if self.loader_timeout_seconds >= self.lock_ttl_seconds:
            raise ValueError("loader_timeout_seconds must be lower than lock_ttl_seconds")
        return self


class RateLimitSettings(BaseSettings):
    """Token bucket rate limiting configuration."""

    enabled: bool = Field(
        True,
        description="Enable rate limiting per API key / client IP",
    )
    rate_per_second: float = Field(
        1.0,
        description="Tokens refilled per second",
        gt=0,
    )
    capacity: float = Field(
        10.0,
        description="Bucket size (maximum burst)",
        gt=0,
    )
    prefix: str = Field(
        "ratelimit",
        description="Key prefix for bucket state in the shared store",
        min_length=1,
    )
    failure_mode: Literal["open", "closed"] = Field(
        "open",
        description=(
            "Behaviour when the store cannot evaluate the bucket: "
            "'open' lets the request through, 'closed' rejects it with 503"
        ),
    )
    write_cost: float = Field(
        5.0,
        description="Tokens consumed by mutating endpoints",
        gt=0,
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def _check_write_cost_fits_bucket(self) -> "RateLimitSettings":
        if self.write_cost > self.capacity:
            raise ValueError("write_cost must not exceed capacity")
        return self


class OriginSettings(BaseSettings):
    """Upstream origin consulted on cache misses."""

    base_url: str = Field(
        "http://localhost:8081",
        description="Base URL of the upstream JSON API",
    )
    timeout_seconds: float = Field(
        10.0,
        description="HTTP timeout for origin requests",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="ORIGIN_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field("json", description="Log line format")
    output: Literal["stdout", "file"] = Field("stdout", description="Log destination")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


def _build_store_settings() -> StoreSettings:
    """Build store settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return StoreSettings()  # type: ignore[call-arg]


def _build_cache_settings() -> CacheSettings:
    return CacheSettings()  # type: ignore[call-arg]


def _build_rate_limit_settings() -> RateLimitSettings:
    return RateLimitSettings()  # type: ignore[call-arg]


def _build_origin_settings() -> OriginSettings:
    return OriginSettings()  # type: ignore[call-arg]


def _build_log_settings() -> LogSettings:
    return LogSettings()  # type: ignore[call-arg]


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.
    """

    app_env: str = APP_ENV
    store: StoreSettings = Field(default_factory=_build_store_settings)
    cache: CacheSettings = Field(default_factory=_build_cache_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)
    origin: OriginSettings = Field(default_factory=_build_origin_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def _check_key_families_are_disjoint(self) -> "Settings":
        # Cache entries must never be read back from limiter bucket keys
        if prefixes_overlap(self.cache.namespace, self.rate_limit.prefix):
            raise ValueError("cache namespace and rate limit prefix must not overlap")
        return self


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
