from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from flashdeck.logging import get_logger

logger = get_logger(__name__)


class IdentityBackend(str, Enum):
    """Where sessions and credentials live.

    - MEMORY: in-process provider backed by MemoryStore (development, tests)
    - GOTRUE: remote GoTrue-compatible auth server reached over HTTP
    """

    MEMORY = "memory"
    GOTRUE = "gotrue"


DEFAULT_PUBLIC_PATHS = [
    "/login",
    "/register",
    "/forgot-password",
    "/reset-password",
    "/api/auth/login",
    "/api/auth/register",
    "/api/auth/forgot-password",
    "/api/auth/reset-password",
    "/healthz",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the session and account services."""

    identity_backend: IdentityBackend = env_field(IdentityBackend.MEMORY, "IDENTITY_BACKEND")
    identity_url: str | None = env_field(
        None, "IDENTITY_URL", description="Base URL of the GoTrue-compatible auth server"
    )
    identity_api_key: str | None = env_field(None, "IDENTITY_API_KEY")
    identity_service_key: str | None = env_field(
        None,
        "IDENTITY_SERVICE_KEY",
        description="Admin key used to roll back a registration whose profile row could not be created",
    )
    identity_timeout_seconds: float = env_field(10.0, "IDENTITY_TIMEOUT_SECONDS")
    access_token_ttl_seconds: int = env_field(
        3600,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Lifetime of tokens issued by the in-process identity provider",
    )
    dev_user_email: str | None = env_field(None, "DEV_USER_EMAIL")
    dev_user_password: str | None = env_field(None, "DEV_USER_PASSWORD")

    database_url: str = env_field("postgresql://localhost:5432/flashdeck", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    cookie_secure: bool = env_field(
        True, "COOKIE_SECURE", description="Disable only for plain-HTTP local development"
    )
    csrf_cookie_ttl_hours: int = env_field(24, "CSRF_COOKIE_TTL_HOURS")
    session_refresh_threshold_seconds: int = env_field(60, "SESSION_REFRESH_THRESHOLD_SECONDS")
    login_path: str = env_field("/login", "LOGIN_PATH")
    public_paths: list[str] = env_field(list(DEFAULT_PUBLIC_PATHS), "PUBLIC_PATHS")

    change_password_max_attempts: int = env_field(5, "CHANGE_PASSWORD_MAX_ATTEMPTS")
    change_password_window_seconds: int = env_field(5 * 60, "CHANGE_PASSWORD_WINDOW_SECONDS")
    change_password_block_seconds: int = env_field(15 * 60, "CHANGE_PASSWORD_BLOCK_SECONDS")
    delete_account_max_attempts: int = env_field(3, "DELETE_ACCOUNT_MAX_ATTEMPTS")
    delete_account_window_seconds: int = env_field(5 * 60, "DELETE_ACCOUNT_WINDOW_SECONDS")
    delete_account_block_seconds: int = env_field(30 * 60, "DELETE_ACCOUNT_BLOCK_SECONDS")
    security_delay_max_ms: int = env_field(
        250,
        "SECURITY_DELAY_MAX_MS",
        description="Upper bound of the random delay applied before SESSION_MISMATCH responses",
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("public_paths", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("identity_backend")
    @classmethod
    def _validate_backend(cls, value: IdentityBackend) -> IdentityBackend:
        return IdentityBackend(value)

    @field_validator(
        "change_password_max_attempts",
        "delete_account_max_attempts",
        "change_password_window_seconds",
        "delete_account_window_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("rate limit attempts and windows must be positive")
        return value

    @field_validator("security_delay_max_ms")
    @classmethod
    def _non_negative_delay(cls, value: int) -> int:
        return max(0, value)

    def validate_identity_backend(self) -> None:
        """Fail fast when the remote identity backend is selected without a URL."""
        if self.identity_backend == IdentityBackend.GOTRUE and not self.identity_url:
            logger.error("identity_url_missing", backend=self.identity_backend.value)
            raise RuntimeError("IDENTITY_URL must be set when IDENTITY_BACKEND=gotrue")


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
