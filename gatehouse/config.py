from __future__ import annotations

import hashlib
import hmac
import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; production hides every internal error detail."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _derive_secret(root: str, label: str) -> str:
    """Derive a purpose-bound secret from the root JWT secret."""
    return hmac.new(root.encode(), label.encode(), hashlib.sha256).hexdigest()


class Settings(BaseModel):
    """Runtime settings for the security engine and its HTTP surface."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows ephemeral secrets and runtime resets for test runs.",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")

    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("gatehouse", "JWT_ISSUER")
    jwt_audience: str = env_field("gatehouse-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    fingerprint_secret: str | None = env_field(None, "FINGERPRINT_SECRET")

    # CSRF
    csrf_secret: str | None = env_field(None, "CSRF_SECRET")
    csrf_token_ttl_seconds: int = env_field(24 * 60 * 60, "CSRF_TOKEN_TTL_SECONDS", gt=0)
    csrf_cookie_name: str = env_field("csrf_token", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("X-CSRF-Token", "CSRF_HEADER_NAME")
    csrf_allowed_origins: list[str] = env_field([], "CSRF_ALLOWED_ORIGINS")
    csrf_enforce_origin: bool = env_field(False, "CSRF_ENFORCE_ORIGIN")
    csrf_exempt_paths: list[str] = env_field([], "CSRF_EXEMPT_PATHS")

    # Sessions
    max_sessions: int = env_field(3, "MAX_SESSIONS", ge=1)

    # Rate limiting
    rate_limit_capacity: int = env_field(30, "RATE_LIMIT_CAPACITY", ge=1)
    rate_limit_refill_per_second: float = env_field(
        2.0, "RATE_LIMIT_REFILL_PER_SECOND", gt=0
    )
    burst_limit: int = env_field(100, "BURST_LIMIT", ge=1)
    burst_window_seconds: int = env_field(60, "BURST_WINDOW_SECONDS", gt=0)
    rate_limit_exempt_paths: list[str] = env_field(
        ["/healthz", "/health"], "RATE_LIMIT_EXEMPT_PATHS"
    )
    rate_limit_max_buckets: int = env_field(10_000, "RATE_LIMIT_MAX_BUCKETS", ge=2)
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Honor X-Forwarded-For style headers; only enable behind a proxy that overwrites them.",
    )

    # Credentials
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH", ge=8)
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_history_size: int = env_field(5, "PASSWORD_HISTORY_SIZE", ge=0)
    password_max_age_days: int = env_field(90, "PASSWORD_MAX_AGE_DAYS", gt=0)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST", ge=8)
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES", gt=0)

    # Request handling
    request_timeout_seconds: float = env_field(30.0, "REQUEST_TIMEOUT_SECONDS", gt=0)
    sweep_interval_seconds: int = env_field(300, "SWEEP_INTERVAL_SECONDS", gt=0)
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "csrf_allowed_origins",
        "csrf_exempt_paths",
        "rate_limit_exempt_paths",
        "cors_allow_origins",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        if not self.jwt_secret:
            if not self.test_mode:
                raise ValueError("JWT_SECRET must be set outside TEST_MODE")
            self.jwt_secret = secrets.token_urlsafe(64)
            logger.warning("jwt_secret_generated_ephemeral")
        if len(self.jwt_secret) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters")
        if not self.fingerprint_secret:
            self.fingerprint_secret = _derive_secret(self.jwt_secret, "fingerprint")
        if not self.csrf_secret:
            self.csrf_secret = _derive_secret(self.jwt_secret, "csrf")
        if self.password_max_length < self.password_min_length:
            raise ValueError("PASSWORD_MAX_LENGTH must not be below PASSWORD_MIN_LENGTH")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
