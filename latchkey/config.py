from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from latchkey.logging import get_logger

logger = get_logger(__name__)

# Session lifetime used when nothing is configured: 14 days
DEFAULT_SESSION_TTL_SECONDS = 14 * 24 * 60 * 60
DEFAULT_OTP_TTL_SECONDS = 5 * 60
# HS256 key floor (RFC 7518 section 3.2), in bytes
MIN_SECRET_BYTES = 32


class SameSite(str, Enum):
    """Accepted values for the session cookie SameSite attribute."""

    LAX = "lax"
    STRICT = "strict"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and credential services."""

    secret: str = env_field(
        ...,
        "LATCHKEY_SECRET",
        description="Signing key shared by session cookies and OAuth state tokens",
    )
    environment: str = env_field("development", "LATCHKEY_ENV")
    # Session cookie
    session_ttl_seconds: int = env_field(
        DEFAULT_SESSION_TTL_SECONDS, "SESSION_TTL_SECONDS", gt=0
    )
    session_cookie_name: str = env_field("session", "SESSION_COOKIE_NAME", min_length=1)
    session_secure: bool | None = env_field(
        None,
        "SESSION_SECURE",
        description="Secure cookie flag; unset means secure only in production",
    )
    session_same_site: SameSite = env_field(SameSite.LAX, "SESSION_SAME_SITE")
    # Email OTP
    otp_ttl_seconds: int = env_field(DEFAULT_OTP_TTL_SECONDS, "OTP_TTL_SECONDS", gt=0)
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_email_subject: str = env_field("Your verification code", "OTP_EMAIL_SUBJECT")
    # Email delivery
    email_from_address: str = env_field("noreply@localhost", "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Latchkey", "EMAIL_FROM_NAME")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    # Google OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str | None = env_field(None, "GOOGLE_REDIRECT_URI")
    google_scopes: list[str] = env_field(
        ["openid", "email", "profile"], "GOOGLE_SCOPES"
    )
    # Storage
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/latchkey", "DATABASE_URL"
    )
    state_dir: str | None = env_field(
        None,
        "LATCHKEY_STATE_DIR",
        description="Directory where the memory store persists its JSON snapshot",
    )

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

    @field_validator("secret")
    @classmethod
    def _validate_secret(cls, value: str) -> str:
        if not value or len(value.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ValueError(
                f"LATCHKEY_SECRET must be at least {MIN_SECRET_BYTES} bytes"
            )
        return value

    @field_validator("session_same_site", mode="before")
    @classmethod
    def _normalize_same_site(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("google_scopes", mode="before")
    @classmethod
    def _split_scopes(cls, value: Any) -> Any:
        # Env values arrive as "openid email profile" or "openid,email"
        if isinstance(value, str):
            return [scope for scope in value.replace(",", " ").split() if scope]
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def cookie_secure(self) -> bool:
        if self.session_secure is None:
            return self.is_production
        return self.session_secure

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host)

    @property
    def google_configured(self) -> bool:
        return bool(
            self.google_client_id
            and self.google_client_secret
            and self.google_redirect_uri
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            environment=_settings_cache.environment,
            memory_store=_settings_cache.use_memory_store,
            google_oauth=_settings_cache.google_configured,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
