from __future__ import annotations

from typing import Mapping, Optional

from clinicore.logging import get_logger
from clinicore.service.errors import InvalidTokenError
from clinicore.service.identity import Identity
from clinicore.service.tokens import TokenService
from clinicore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

SESSION_COOKIE_NAME = "token"


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credentials = credentials.strip()
    return credentials or None


class SessionResolver:
    """Turns request headers and cookies into an ``Identity`` or ``None``.

    A bearer header takes precedence over the session cookie. Nothing raises
    past ``resolve``: any failure means the caller is anonymous.
    """

    def __init__(self, tokens: TokenService, cache: Optional[RedisCache] = None) -> None:
        self.tokens = tokens
        self.cache = cache

    @staticmethod
    def token_from_request(
        headers: Mapping[str, str], cookies: Mapping[str, str]
    ) -> Optional[str]:
        authorization = headers.get("authorization") or headers.get("Authorization")
        return extract_bearer(authorization) or (cookies.get(SESSION_COOKIE_NAME) or None)

    async def resolve(
        self, headers: Mapping[str, str], cookies: Mapping[str, str]
    ) -> Optional[Identity]:
        token = self.token_from_request(headers, cookies)
        if not token:
            return None
        try:
            identity = self.tokens.verify_session_token(token)
        except InvalidTokenError:
            return None
        if await self._is_revoked(identity):
            return None
        return identity

    async def _is_revoked(self, identity: Identity) -> bool:
        if not self.cache or not identity.token_id:
            return False
        try:
            return await self.cache.is_session_token_denylisted(identity.token_id)
        except Exception as exc:
            logger.error("session_denylist_check_failed", user_id=identity.id, error=str(exc))
            return True

    async def revoke(self, token: str) -> bool:
        """Denylist a session token until its own expiry; False if nothing to revoke."""
        try:
            payload = self.tokens.verify(token, token_type="session")
        except InvalidTokenError:
            return False
        jti = payload.get("jti")
        if not self.cache or not jti:
            return False
        await self.cache.denylist_session_token(jti, self.tokens.remaining_seconds(payload))
        logger.info("session_token_revoked", user_id=payload.get("sub"))
        return True
