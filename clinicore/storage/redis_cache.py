from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for ephemeral security state.

    Holds the session-token denylist used by logout and the two-factor
    brute-force counters. Durable records stay in the credential store.
    """

    # Atomic check-and-increment; sets the lockout key once the limit is hit
    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least one."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_session_token(self, jti: str, ttl_seconds: int) -> None:
        """Reject the token with this ``jti`` until it would have expired anyway."""
        if ttl_seconds > 0:
            await self.client.set(f"auth:session:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_session_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:session:denylist:{jti}"))

    # =========================================================================
    # Two-factor lockout tracking
    # =========================================================================

    async def check_mfa_lockout(self, user_id: str) -> bool:
        return bool(await self.client.exists(f"mfa:lockout:{user_id}"))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed code and report ``(is_locked_out, attempts)``.

        ``attempts`` is -1 when the user was already locked out.
        """
        result = await self.client.eval(
            self._MFA_ATTEMPT_SCRIPT,
            2,
            f"mfa:lockout:{user_id}",
            f"mfa:attempts:{user_id}",
            max_attempts,
            lockout_seconds,
        )
        return (bool(result[0]), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        await self.client.delete(f"mfa:attempts:{user_id}")

    async def close(self) -> None:
        """Close the connection pool when the runtime is torn down."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
