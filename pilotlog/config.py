from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pilotlog.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the pilotlog auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/pilotlog", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared rate-limit counters; in-process counters are used when unset",
    )
    app_base_url: str | None = env_field(
        None,
        "APP_BASE_URL",
        description="Public URL of the app; its host is always accepted as a same-origin host",
    )
    approver_email: str | None = env_field(
        None,
        "APPROVER_EMAIL",
        description="Recipient of account-approval links for new registrations",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    force_https: bool = env_field(
        False,
        "FORCE_HTTPS",
        description="Redirect plain-HTTP requests (per X-Forwarded-Proto) to https",
    )

    # Session cookie
    session_cookie_name: str = env_field("auth_session", "SESSION_COOKIE_NAME")
    session_ttl_minutes: int = env_field(30 * 24 * 60, "SESSION_TTL_MINUTES")
    allow_insecure_cookies: bool = env_field(
        False,
        "ALLOW_INSECURE_COOKIES",
        description="Drop the Secure cookie attribute; only for local plain-HTTP development",
    )

    # Rate limits (attempts per window)
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    password_reset_rate_limit: int = env_field(3, "PASSWORD_RESET_RATE_LIMIT")
    registration_rate_limit: int = env_field(3, "REGISTRATION_RATE_LIMIT")
    resend_verification_rate_limit: int = env_field(3, "RESEND_VERIFICATION_RATE_LIMIT")
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")

    # One-time token lifetimes
    approval_token_ttl_days: int = env_field(7, "APPROVAL_TOKEN_TTL_DAYS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

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
        "session_ttl_minutes",
        "login_rate_limit",
        "password_reset_rate_limit",
        "registration_rate_limit",
        "resend_verification_rate_limit",
        "rate_limit_window_seconds",
        "approval_token_ttl_days",
        "password_reset_ttl_minutes",
        "email_verification_ttl_hours",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("redis_url", "app_base_url", "approver_email")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("session_cookie_name")
    @classmethod
    def _validate_cookie_name(cls, value: str) -> str:
        value = value.strip()
        if not value or any(ch in value for ch in " ;,="):
            raise ValueError("invalid cookie name")
        return value

    @property
    def cookie_secure(self) -> bool:
        return not self.allow_insecure_cookies


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        if _settings_cache.allow_insecure_cookies:
            logger.warning(
                "insecure_cookies_enabled",
                message="Session cookies will be sent without the Secure attribute",
            )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
