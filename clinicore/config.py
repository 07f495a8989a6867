from __future__ import annotations

import base64
import hashlib
import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinicore.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment contexts; only PRODUCTION refuses insecure fallbacks."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


# Candidate environment variables for the token signing secret, in priority order
SIGNING_SECRET_CANDIDATES: tuple[str, ...] = ("auth_secret", "jwt_secret", "session_secret")


class ConfigurationError(RuntimeError):
    """Raised at startup when a required secret is missing in production."""


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the clinic backend."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime resets, fixed secrets).",
    )
    # Signing secret candidates, resolved once by resolve_signing_secret()
    auth_secret: str | None = env_field(None, "AUTH_SECRET")
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    session_secret: str | None = env_field(None, "SESSION_SECRET")
    token_issuer: str = env_field("clinicore", "TOKEN_ISSUER")
    token_audience: str = env_field("clinicore-clients", "TOKEN_AUDIENCE")
    session_token_ttl_minutes: int = env_field(
        24 * 60,
        "SESSION_TOKEN_TTL_MINUTES",
        description="Lifetime of session tokens and the session cookie",
    )
    purpose_token_ttl_minutes: int = env_field(
        10,
        "PURPOSE_TOKEN_TTL_MINUTES",
        description="Default lifetime of purpose tokens such as OAuth state",
    )
    two_factor_ttl_minutes: int = env_field(5, "TWO_FACTOR_TTL_MINUTES")
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS")
    two_factor_lockout_seconds: int = env_field(300, "TWO_FACTOR_LOCKOUT_SECONDS")
    invitation_ttl_days: int = env_field(7, "INVITATION_TTL_DAYS")
    encryption_master_key: str | None = env_field(
        None,
        "ENCRYPTION_MASTER_KEY",
        description="Base64 master key wrapping per-tenant data keys; required in production",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    shared_fs_root: str = env_field("/srv/clinicore", "SHARED_FS_ROOT")
    persist_memory_store: bool = env_field(True, "PERSIST_MEMORY_STORE")
    # Email delivery; without SMTP_HOST messages are logged instead of sent
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Clinicore", "EMAIL_FROM_NAME")
    default_locale: str = env_field("es", "DEFAULT_LOCALE")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of origins allowed by CORS",
    )
    # OAuth integrations; the flow is gated before redirecting
    google_calendar_client_id: str | None = env_field(None, "GOOGLE_CALENDAR_CLIENT_ID")
    google_calendar_redirect_uri: str | None = env_field(
        None, "GOOGLE_CALENDAR_REDIRECT_URI"
    )
    gemini_client_id: str | None = env_field(None, "GEMINI_CLIENT_ID")
    gemini_redirect_uri: str | None = env_field(None, "GEMINI_REDIRECT_URI")

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

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value or [])

    @field_validator("default_locale")
    @classmethod
    def _validate_locale(cls, value: str) -> str:
        locale = (value or "es").strip().lower()
        if locale not in {"es", "en"}:
            raise ValueError("default_locale must be 'es' or 'en'")
        return locale

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def oauth_client(self, provider: str) -> tuple[str | None, str | None]:
        """Return ``(client_id, redirect_uri)`` for an integration provider."""
        if provider == "google_calendar":
            return self.google_calendar_client_id, self.google_calendar_redirect_uri
        if provider == "gemini":
            return self.gemini_client_id, self.gemini_redirect_uri
        return None, None


def resolve_signing_secret(settings: Settings) -> str:
    """Pick the token signing secret from the configured candidates.

    The first non-empty candidate wins. Production without any candidate is a
    fatal startup condition; other environments get a random per-process
    secret so sessions simply do not survive a restart.
    """
    for name in SIGNING_SECRET_CANDIDATES:
        value = getattr(settings, name)
        if value and value.strip():
            return value.strip()
    if settings.is_production:
        raise ConfigurationError(
            "No signing secret configured; set AUTH_SECRET, JWT_SECRET or SESSION_SECRET"
        )
    logger.warning("signing_secret_ephemeral", environment=settings.environment.value)
    return secrets.token_urlsafe(64)


def resolve_master_key(settings: Settings, signing_secret: str) -> bytes:
    """Return the 32-byte key that wraps per-tenant encryption keys."""
    raw = settings.encryption_master_key
    if raw:
        try:
            decoded = base64.b64decode(raw.strip(), validate=True)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("ENCRYPTION_MASTER_KEY must be base64") from exc
        if len(decoded) != 32:
            raise ConfigurationError("ENCRYPTION_MASTER_KEY must decode to 32 bytes")
        return decoded
    if settings.is_production:
        raise ConfigurationError("ENCRYPTION_MASTER_KEY is required in production")
    logger.warning("encryption_master_key_derived", environment=settings.environment.value)
    return hashlib.sha256(f"clinicore-master:{signing_secret}".encode()).digest()


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
