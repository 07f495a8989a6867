from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from clinicore.logging import get_logger, mask_email
from clinicore.service.errors import DeliveryError, NoEmailOnFileError
from clinicore.storage.common import CredentialStore
from clinicore.storage.models import TwoFactorChallenge, User
from clinicore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

CODE_MIN = 100000
CODE_MAX = 999999

NOT_REQUESTED = "not_requested"
ALREADY_USED = "already_used"
EXPIRED = "expired"
INVALID_CODE = "invalid_code"
LOCKED_OUT = "locked_out"


class TwoFactorNotifier(Protocol):
    def send_two_factor_code(
        self, to_email: str, code: str, expires_minutes: int, locale: str
    ) -> bool: ...


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None


def code_digest(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


class TwoFactorEngine:
    """One-time email codes gating session issuance.

    Only the newest challenge per user is kept, so a new ``send`` makes any
    earlier code useless. Expiry is checked when a code is submitted; expired
    challenges are never purged.
    """

    def __init__(
        self,
        store: CredentialStore,
        notifier: TwoFactorNotifier,
        cache: Optional[RedisCache] = None,
        *,
        ttl_minutes: int = 5,
        max_attempts: int = 5,
        lockout_seconds: int = 300,
        default_locale: str = "es",
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.cache = cache
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.default_locale = default_locale
        # In-memory lockout fallback when Redis is not configured
        self._state_lock = threading.Lock()
        self._attempts: dict[str, tuple[int, datetime]] = {}
        self._lockouts: dict[str, datetime] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def generate_code() -> str:
        return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))

    async def send(self, user: User, *, locale: Optional[str] = None) -> TwoFactorChallenge:
        if not user.email:
            raise NoEmailOnFileError()
        code = self.generate_code()
        challenge = self.store.upsert_two_factor_challenge(
            TwoFactorChallenge.new(user.id, code_digest(code), ttl_minutes=self.ttl_minutes)
        )
        try:
            delivered = await asyncio.to_thread(
                self.notifier.send_two_factor_code,
                user.email,
                code,
                self.ttl_minutes,
                locale or self.default_locale,
            )
        except Exception as exc:
            logger.error(
                "two_factor_delivery_failed",
                user_id=user.id,
                recipient=mask_email(user.email),
                error=str(exc),
            )
            raise DeliveryError("could not send the verification code") from exc
        if not delivered:
            logger.error("two_factor_delivery_failed", user_id=user.id, recipient=mask_email(user.email))
            raise DeliveryError("could not send the verification code")
        logger.info("two_factor_code_sent", user_id=user.id, challenge_id=challenge.id)
        return challenge

    async def validate(self, user_id: str, code: str) -> ValidationResult:
        if await self._is_locked_out(user_id):
            logger.warning("two_factor_locked_out", user_id=user_id)
            return ValidationResult(False, LOCKED_OUT)

        challenge = self.store.get_two_factor_challenge(user_id)
        if challenge is None:
            return ValidationResult(False, NOT_REQUESTED)
        if challenge.consumed_at is not None:
            return ValidationResult(False, ALREADY_USED)
        now = self._now()
        if challenge.expires_at <= now:
            return ValidationResult(False, EXPIRED)

        submitted = code if isinstance(code, str) else ""
        if not hmac.compare_digest(code_digest(submitted), challenge.code_digest):
            locked = await self._record_failure(user_id)
            return ValidationResult(False, LOCKED_OUT if locked else INVALID_CODE)

        if not self.store.consume_two_factor_challenge(user_id, challenge.id, now):
            # A concurrent request consumed it, or a newer code replaced it
            return ValidationResult(False, ALREADY_USED)
        await self._clear_failures(user_id)
        logger.info("two_factor_code_verified", user_id=user_id, challenge_id=challenge.id)
        return ValidationResult(True)

    # ---------------------------------------------------------------- lockout

    async def _is_locked_out(self, user_id: str) -> bool:
        if self.cache:
            return await self.cache.check_mfa_lockout(user_id)
        now = self._now()
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(user_id, None)
        return False

    async def _record_failure(self, user_id: str) -> bool:
        if self.cache:
            is_locked, attempts = await self.cache.atomic_mfa_attempt(
                user_id, max_attempts=self.max_attempts, lockout_seconds=self.lockout_seconds
            )
            if is_locked and attempts >= 0:
                logger.warning("two_factor_lockout_triggered", user_id=user_id, attempts=attempts)
            return is_locked
        now = self._now()
        window = timedelta(seconds=self.lockout_seconds)
        with self._state_lock:
            attempts, window_start = 1, now
            current = self._attempts.get(user_id)
            if current and now - current[1] < window:
                attempts, window_start = current[0] + 1, current[1]
            self._attempts[user_id] = (attempts, window_start)
            if attempts >= self.max_attempts:
                self._lockouts[user_id] = now + window
                self._attempts.pop(user_id, None)
                logger.warning("two_factor_lockout_triggered", user_id=user_id, attempts=attempts)
                return True
        return False

    async def _clear_failures(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(user_id)
            return
        with self._state_lock:
            self._attempts.pop(user_id, None)
