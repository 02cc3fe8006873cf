from __future__ import annotations

import json
import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantgate.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ITERATIONS_DEFAULT = 210_000
PASSWORD_ITERATIONS_MIN = 100_000
PASSWORD_ITERATIONS_MAX = 2_000_000


class AppEnv(str, Enum):
    """Deployment environments recognised by cookie and header policy."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class RateLimitBackend(str, Enum):
    """Where persisted rate-limit counters live."""

    STORE = "store"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    return Field(default, json_schema_extra={"env": env}, **kwargs)


class Settings(BaseModel):
    app_env: AppEnv = env_field(AppEnv.PRODUCTION, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/tenantgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors; allows runtime resets.",
    )
    rate_limit_backend: RateLimitBackend = env_field(
        RateLimitBackend.STORE,
        "RATE_LIMIT_BACKEND",
        description="Persisted rate-limit counters: the primary store or Redis",
    )

    # Credentials
    session_secret: str | None = env_field(None, "AUTH_SESSION_SECRET")
    password_pepper: str | None = env_field(None, "AUTH_PASSWORD_PEPPER")
    password_iterations: int = env_field(
        PASSWORD_ITERATIONS_DEFAULT, "AUTH_PASSWORD_PBKDF2_ITERATIONS"
    )
    signup_invite_key: str | None = env_field(None, "AUTH_SIGNUP_INVITE_KEY")

    # Session lifetime
    session_ttl_hours: int = env_field(24, "AUTH_SESSION_TTL_HOURS")
    session_renew_window_hours: int = env_field(6, "AUTH_SESSION_RENEW_WINDOW_HOURS")
    session_absolute_ttl_days: int = env_field(30, "AUTH_SESSION_ABSOLUTE_TTL_DAYS")

    # Rate-limit retention sweep
    rate_limit_retention_hours: int = env_field(24, "RATE_LIMIT_RETENTION_HOURS")
    rate_limit_cleanup_interval_seconds: int = env_field(
        300, "RATE_LIMIT_CLEANUP_INTERVAL_SECONDS"
    )

    # Tenancy
    tenant_db_bindings: dict[str, str] = env_field(
        {},
        "TENANT_DB_BINDINGS",
        description="JSON object mapping dedicated binding names to database DSNs",
    )
    default_client_id: str = env_field(
        "6eb657af-4ab8-4a13-980a-add993f78d65", "DEFAULT_CLIENT_ID"
    )
    default_client_name: str = env_field("Default Organization", "DEFAULT_CLIENT_NAME")
    default_client_slug: str = env_field("default", "DEFAULT_CLIENT_SLUG")

    # HTTP
    trusted_proxy_ips: list[str] = env_field([], "TRUSTED_PROXY_IPS")
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

    @property
    def is_development(self) -> bool:
        return self.app_env == AppEnv.DEVELOPMENT

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            value = value.strip().lower()
            if value in {"dev", "local"}:
                value = AppEnv.DEVELOPMENT.value
            elif value == "prod":
                value = AppEnv.PRODUCTION.value
        return AppEnv(value)

    @field_validator("rate_limit_backend", mode="before")
    @classmethod
    def _validate_rate_limit_backend(cls, value: Any) -> RateLimitBackend:
        if isinstance(value, str):
            value = value.strip().lower()
        return RateLimitBackend(value)

    @field_validator("password_iterations", mode="before")
    @classmethod
    def _clamp_iterations(cls, value: Any) -> int:
        return normalize_password_iterations(value)

    @field_validator("session_secret", "password_pepper", "signup_invite_key", "redis_url")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("tenant_db_bindings", mode="before")
    @classmethod
    def _parse_bindings(cls, value: Any) -> dict[str, str]:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("TENANT_DB_BINDINGS must be a JSON object") from exc
        if not isinstance(value, dict):
            raise ValueError("TENANT_DB_BINDINGS must be a JSON object")
        return {str(name).strip(): str(dsn) for name, dsn in value.items() if str(name).strip()}

    @field_validator("trusted_proxy_ips", mode="before")
    @classmethod
    def _parse_proxy_ips(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return [str(part).strip() for part in value if str(part).strip()]


def normalize_password_iterations(value: Any) -> int:
    """Clamp a configured PBKDF2 cost to the supported range.

    Anything that is not an integer inside ``[100_000, 2_000_000]`` falls back to
    the default rather than being silently pinned to a bound.
    """
    if value is None or isinstance(value, bool):
        return PASSWORD_ITERATIONS_DEFAULT
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        logger.warning("password_iterations_invalid", value=str(value))
        return PASSWORD_ITERATIONS_DEFAULT
    if parsed < PASSWORD_ITERATIONS_MIN or parsed > PASSWORD_ITERATIONS_MAX:
        logger.warning(
            "password_iterations_out_of_range",
            value=parsed,
            minimum=PASSWORD_ITERATIONS_MIN,
            maximum=PASSWORD_ITERATIONS_MAX,
        )
        return PASSWORD_ITERATIONS_DEFAULT
    return parsed


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
