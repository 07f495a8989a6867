from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from clinicore.config import (
    get_settings,
    reset_settings_cache,
    resolve_master_key,
    resolve_signing_secret,
)
from clinicore.logging import get_logger
from clinicore.service.auth import AuthService
from clinicore.service.email import EmailService
from clinicore.service.encryption import KeyManager
from clinicore.service.integrations import IntegrationService
from clinicore.service.patients import PatientService
from clinicore.service.sessions import SessionResolver
from clinicore.service.team import TeamService
from clinicore.service.tenancy import TenantResolver
from clinicore.service.tokens import TokenService
from clinicore.service.two_factor import TwoFactorEngine
from clinicore.storage.memory import MemoryStore
from clinicore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                persist=self.settings.persist_memory_store,
            )
            logger.info("runtime_store_initialized", store_type="memory")
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for session revocation and two-factor lockouts; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; two-factor lockouts are "
                    "per-process and logout cannot revoke issued tokens."
                ),
                mode=fallback_mode,
            )

        # Resolved once; ConfigurationError here aborts startup in production
        signing_secret = resolve_signing_secret(self.settings)
        master_key = resolve_master_key(self.settings, signing_secret)

        self.tokens = TokenService(
            signing_secret,
            issuer=self.settings.token_issuer,
            audience=self.settings.token_audience,
            session_ttl_minutes=self.settings.session_token_ttl_minutes,
            purpose_ttl_minutes=self.settings.purpose_token_ttl_minutes,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            default_locale=self.settings.default_locale,
        )
        self.two_factor = TwoFactorEngine(
            self.store,
            self.email,
            self.cache,
            ttl_minutes=self.settings.two_factor_ttl_minutes,
            max_attempts=self.settings.two_factor_max_attempts,
            lockout_seconds=self.settings.two_factor_lockout_seconds,
            default_locale=self.settings.default_locale,
        )
        self.sessions = SessionResolver(self.tokens, self.cache)
        self.tenancy = TenantResolver(self.store)
        self.auth = AuthService(
            self.store, self.tokens, self.two_factor, self.sessions, self.tenancy
        )
        self.team = TeamService(
            self.store,
            self.tenancy,
            self.email,
            invitation_ttl_days=self.settings.invitation_ttl_days,
            base_url=self.settings.app_base_url,
        )
        self.patients = PatientService(self.store, self.tenancy)
        self.keys = KeyManager(self.store, master_key)
        self.integrations = IntegrationService(
            self.store, self.tenancy, self.tokens, self.keys, self.settings
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            persist_memory_store=self.settings.persist_memory_store,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime
    exists; the second check under the lock prevents a duplicate build.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
