#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
resilient API core. All configuration is centralized here so every layer
(cache, limiter, breaker, pipeline, telemetry) reads the same values.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support (or an explicit env file via --config)
- Type validation at startup (fail fast on misconfiguration)
- Flat upper-case fields, grouped into read-only section views

Author: System Architect
Date: 2025-12-05
"""

import os
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.core.config.constants import DEFAULT_ACCESS_LOG_SKIP_PATHS

_SECTION_CONFIG = SettingsConfigDict(env_prefix="", case_sensitive=True)


def _default_redis_pool_size() -> int:
    return max(100, 10 * (os.cpu_count() or 1))


class ApplicationSettings(BaseSettings):
    """
    Application-level settings.

    STAGE-0.1: Application configuration
    """

    ENVIRONMENT: Literal["development", "staging", "production"] = Field(default="development")
    APP_NAME: str = Field(default="resilient-api")
    APP_VERSION: str = Field(default="1.0.0")
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8080)
    DRAIN_DEADLINE_SECONDS: float = Field(default=30.0)
    REQUEST_TIMEOUT_SECONDS: float = Field(default=30.0, description="0 disables the timeout stage")
    CORS_ALLOW_ORIGINS: list[str] = Field(default_factory=list)
    CORS_ALLOW_CREDENTIALS: bool = Field(default=False)
    CORS_MAX_AGE: int = Field(default=86400)
    GZIP_MINIMUM_SIZE: int = Field(default=500)
    GZIP_EXCLUDED_EXTENSIONS: list[str] = Field(default_factory=lambda: [".png", ".jpg", ".jpeg", ".gif"])

    model_config = _SECTION_CONFIG


class RedisSettings(BaseSettings):
    """
    Redis configuration for the L2 cache and distributed limiters.

    STAGE-0.2: Redis connection configuration

    Architectural Decision: bounded blocking pool
    - Pool size: max(100, 10 x CPU)
    - Minimum idle connections warmed at startup
    - Idle connections older than 5 minutes and connections older than
      30 minutes are recycled on checkout
    """

    REDIS_ENABLED: bool = Field(default=True)
    REDIS_HOST: str = Field(default="localhost")
    REDIS_PORT: int = Field(default=6379)
    REDIS_DB: int = Field(default=0)
    REDIS_PASSWORD: str | None = Field(default=None)
    REDIS_POOL_SIZE: int = Field(default_factory=_default_redis_pool_size)
    REDIS_MIN_IDLE_CONNS: int = Field(default=20)
    REDIS_DIAL_TIMEOUT: float = Field(default=3.0)
    REDIS_READ_TIMEOUT: float = Field(default=1.0)
    REDIS_WRITE_TIMEOUT: float = Field(default=1.0)
    REDIS_POOL_TIMEOUT: float = Field(default=2.0)
    REDIS_MAX_RETRIES: int = Field(default=3)
    REDIS_MIN_RETRY_BACKOFF: float = Field(default=0.008)
    REDIS_MAX_RETRY_BACKOFF: float = Field(default=0.512)
    REDIS_CONN_MAX_IDLE_TIME: float = Field(default=300.0)
    REDIS_CONN_MAX_LIFETIME: float = Field(default=1800.0)
    REDIS_STARTUP_PING_TIMEOUT: float = Field(default=5.0)

    model_config = _SECTION_CONFIG


class DatabaseSettings(BaseSettings):
    """
    MySQL pool configuration. Only the pool is owned here; queries belong to callers.

    STAGE-0.3: Database configuration
    """

    DATABASE_URL: str | None = Field(default=None, description="e.g. mysql+aiomysql://user:pw@host/db")
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=20)
    DB_POOL_TIMEOUT: float = Field(default=30.0)
    DB_POOL_RECYCLE: int = Field(default=3600)

    model_config = _SECTION_CONFIG


class CacheSettings(BaseSettings):
    """
    Multi-level cache configuration.

    STAGE-0.4: Cache configuration
    """

    CACHE_L1_MAX_COST: int = Field(default=64 * 1024 * 1024, description="L1 budget in bytes")
    CACHE_L1_NUM_COUNTERS: int = Field(default=1_000_000)
    CACHE_L1_BUFFER_ITEMS: int = Field(default=64)
    CACHE_L1_CLEANUP_INTERVAL: float = Field(default=30.0)
    CACHE_DEFAULT_TTL: int = Field(default=300)
    CACHE_L1_MAX_TTL: int = Field(default=60)
    CACHE_NULL_TTL: int = Field(default=60)
    CACHE_BLOOM_ENABLED: bool = Field(default=False)
    CACHE_BLOOM_EXPECTED_ITEMS: int = Field(default=100_000)
    CACHE_BLOOM_FP_RATE: float = Field(default=0.01)
    CACHE_NAMESPACE_VERSION_TTL: float = Field(default=1.0)

    model_config = _SECTION_CONFIG


class RateLimitSettings(BaseSettings):
    """
    Rate limiting configuration.

    STAGE-0.5: Rate limiting thresholds

    Architectural Decision: distributed limiter with local fallback
    - Redis sliding window when Redis is reachable
    - Per-identity token buckets in-process otherwise
    """

    RATE_LIMIT_ENABLED: bool = Field(default=True)
    RATE_LIMIT_RATE: float = Field(default=100.0, description="tokens per second")
    RATE_LIMIT_BURST: int = Field(default=200)
    RATE_LIMIT_MAX_IDENTITIES: int = Field(default=10_000)
    RATE_LIMIT_IDENTITY_TTL: float = Field(default=600.0)
    RATE_LIMIT_CLEANUP_INTERVAL: float = Field(default=60.0)
    RATE_LIMIT_DISTRIBUTED: bool = Field(default=True)
    RATE_LIMIT_WINDOW: float = Field(default=1.0)
    RATE_LIMIT_WINDOW_LIMIT: int = Field(default=100)
    AUTH_RATE_LIMIT_RATE: float = Field(default=10 / 60)
    AUTH_RATE_LIMIT_BURST: int = Field(default=5)
    AUTH_RATE_LIMIT_PREFIX: str = Field(default="/api/v1/auth/")

    model_config = _SECTION_CONFIG


class CircuitBreakerSettings(BaseSettings):
    """
    Circuit breaker configuration for fault tolerance.

    STAGE-0.6: Circuit breaker thresholds
    """

    CB_ENABLED: bool = Field(default=True)
    CB_MAX_REQUESTS: int = Field(default=5, description="Probes admitted while half-open")
    CB_INTERVAL: float = Field(default=10.0, description="Closed-state counter reset period")
    CB_TIMEOUT: float = Field(default=30.0, description="Open-state duration")
    CB_FAILURE_RATIO: float = Field(default=0.5)
    CB_MIN_REQUESTS: int = Field(default=10)

    model_config = _SECTION_CONFIG


class LoggingSettings(BaseSettings):
    """
    Logging configuration.

    STAGE-0.7: Logging setup
    """

    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json")
    ACCESS_LOG_SAMPLE_RATE: float = Field(default=1.0)
    ACCESS_LOG_SLOW_THRESHOLD: float = Field(default=1.0)
    ACCESS_LOG_SKIP_PATHS: list[str] = Field(default_factory=lambda: list(DEFAULT_ACCESS_LOG_SKIP_PATHS))

    model_config = _SECTION_CONFIG


class SecuritySettings(BaseSettings):
    """Authentication and debug-surface settings."""

    JWT_SECRET: str | None = Field(default=None)
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ISSUER: str | None = Field(default=None)
    DEBUG_AUTH_TOKEN: str | None = Field(default=None)

    model_config = _SECTION_CONFIG


class TelemetrySettings(BaseSettings):
    """Health probe and pool collector settings."""

    POOL_METRICS_INTERVAL: float = Field(default=15.0)
    HEALTH_PING_TIMEOUT: float = Field(default=2.0)

    model_config = _SECTION_CONFIG


class Settings(
    ApplicationSettings,
    RedisSettings,
    DatabaseSettings,
    CacheSettings,
    RateLimitSettings,
    CircuitBreakerSettings,
    LoggingSettings,
    SecuritySettings,
    TelemetrySettings,
):
    """
    Main settings class combining all configuration sections.

    Usage:
        settings = get_settings()
        redis_host = settings.redis.REDIS_HOST
        limit = settings.rate_limit.RATE_LIMIT_RATE
    """

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str | None) -> str | None:
        if v is not None and len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters")
        return v

    @field_validator("ACCESS_LOG_SAMPLE_RATE")
    @classmethod
    def validate_sample_rate(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("ACCESS_LOG_SAMPLE_RATE must be within [0, 1]")
        return v

    @field_validator("CB_FAILURE_RATIO")
    @classmethod
    def validate_failure_ratio(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("CB_FAILURE_RATIO must be within (0, 1]")
        return v

    @model_validator(mode="after")
    def validate_pool_bounds(self) -> "Settings":
        if self.REDIS_MIN_IDLE_CONNS > self.REDIS_POOL_SIZE:
            raise ValueError("REDIS_MIN_IDLE_CONNS cannot exceed REDIS_POOL_SIZE")
        if self.RATE_LIMIT_MAX_IDENTITIES <= 0:
            raise ValueError("RATE_LIMIT_MAX_IDENTITIES must be positive")
        return self

    # ------------------------------------------------------------------
    # Environment helpers
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    # ------------------------------------------------------------------
    # Section views
    # ------------------------------------------------------------------

    def _section(self, section_cls: type[BaseSettings]) -> BaseSettings:
        return section_cls(**{name: getattr(self, name) for name in section_cls.model_fields})

    @property
    def app(self) -> ApplicationSettings:
        """Get application settings."""
        return self._section(ApplicationSettings)

    @property
    def redis(self) -> RedisSettings:
        """Get Redis settings."""
        return self._section(RedisSettings)

    @property
    def database(self) -> DatabaseSettings:
        """Get database pool settings."""
        return self._section(DatabaseSettings)

    @property
    def cache(self) -> CacheSettings:
        """Get cache settings."""
        return self._section(CacheSettings)

    @property
    def rate_limit(self) -> RateLimitSettings:
        """Get rate limit settings."""
        return self._section(RateLimitSettings)

    @property
    def circuit_breaker(self) -> CircuitBreakerSettings:
        """Get circuit breaker settings."""
        return self._section(CircuitBreakerSettings)

    @property
    def logging(self) -> LoggingSettings:
        """Get logging settings."""
        return self._section(LoggingSettings)

    @property
    def security(self) -> SecuritySettings:
        return self._section(SecuritySettings)

    @property
    def telemetry(self) -> TelemetrySettings:
        return self._section(TelemetrySettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance (singleton pattern)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton).

    STAGE-0.8: Settings initialization

    Returns:
        Settings: Global settings instance
    """
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings


def load_settings(config_path: str | None = None) -> Settings:
    """
    Build the global settings from an explicit env file.

    Args:
        config_path: Path passed on the command line with ``--config``.
            Values in the process environment still take precedence.

    Returns:
        Settings: New global settings instance
    """
    global _settings
    if config_path is None:
        _settings = Settings()
    else:
        _settings = Settings(_env_file=config_path)
    return _settings


def reload_settings() -> Settings:
    """
    Reload settings (useful for testing).

    Returns:
        Settings: New settings instance
    """
    global _settings
    _settings = Settings()
    return _settings
