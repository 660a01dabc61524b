from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from algoauth.logging import get_logger

logger = get_logger(__name__)


class ConfigurationError(RuntimeError):
    """Fatal misconfiguration detected at startup (never raised per request)."""


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/algoauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, relaxed fallbacks).",
    )
    # Signing secrets have no default: a missing secret is fatal at startup.
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token TTL in minutes",
    )
    refresh_token_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token (and session row) TTL in minutes",
    )
    rotate_refresh_tokens: bool = env_field(
        True,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh token on every refresh and retire the old one",
    )
    # Password hashing work factor (argon2id)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")
    # Rate limits
    rate_limit_default_limit: int = env_field(100, "RATE_LIMIT_DEFAULT_LIMIT")
    rate_limit_default_window_seconds: int = env_field(
        900, "RATE_LIMIT_DEFAULT_WINDOW_SECONDS"
    )
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    # One-time token lifetimes
    password_reset_ttl_seconds: int = env_field(3600, "PASSWORD_RESET_TTL_SECONDS")
    email_verification_ttl_seconds: int = env_field(
        24 * 3600, "EMAIL_VERIFICATION_TTL_SECONDS"
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound on any single store or cache call before failing closed",
    )
    cors_allow_origins: str = env_field("http://localhost:3000", "CORS_ALLOW_ORIGINS")
    # Email delivery (falls back to logging when SMTP_HOST is unset)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

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

    @field_validator("jwt_secret", "jwt_refresh_secret")
    @classmethod
    def _blank_secret_is_missing(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTL must be positive")
        return value

    @model_validator(mode="after")
    def _refresh_outlives_access(self) -> "Settings":
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            logger.warning(
                "refresh_ttl_not_longer_than_access",
                access_token_ttl_minutes=self.access_token_ttl_minutes,
                refresh_token_ttl_minutes=self.refresh_token_ttl_minutes,
            )
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    def require_signing_secrets(self) -> tuple[str, str]:
        """Return (access_secret, refresh_secret) or raise ConfigurationError."""
        missing = [
            env
            for env, value in (
                ("JWT_SECRET", self.jwt_secret),
                ("JWT_REFRESH_SECRET", self.jwt_refresh_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"missing signing secret(s): {', '.join(missing)}"
            )
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ConfigurationError(
                "JWT_SECRET and JWT_REFRESH_SECRET must be different"
            )
        return self.jwt_secret, self.jwt_refresh_secret


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
