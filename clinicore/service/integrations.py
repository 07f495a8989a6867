from __future__ import annotations

from typing import Any, Optional
from urllib.parse import urlencode

from clinicore.config import Settings
from clinicore.logging import get_logger
from clinicore.service import plans
from clinicore.service.encryption import KeyManager
from clinicore.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from clinicore.service.identity import Identity
from clinicore.service.tenancy import TenantContext, TenantResolver
from clinicore.service.tokens import TokenService
from clinicore.storage.common import CredentialStore
from clinicore.storage.models import IntegrationGrant

logger = get_logger(__name__)

# OAuth authorization endpoints; the code exchange belongs to the integration worker
INTEGRATION_PROVIDERS = {
    "google_calendar": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "scope": "https://www.googleapis.com/auth/calendar.events",
    },
    "gemini": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "scope": "https://www.googleapis.com/auth/generative-language.retriever",
    },
}

# Providers that also accept a directly pasted API key
API_KEY_PROVIDERS = frozenset({"gemini"})


def oauth_purpose(provider: str) -> str:
    return f"oauth:{provider}"


class IntegrationService:
    """Decides who may connect calendar and AI providers, and binds the redirect.

    The ``state`` parameter is a purpose token naming the user, so the
    callback needs no server-side session storage.
    """

    def __init__(
        self,
        store: CredentialStore,
        tenancy: TenantResolver,
        tokens: TokenService,
        keys: KeyManager,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tenancy = tenancy
        self.tokens = tokens
        self.keys = keys
        self.settings = settings

    @staticmethod
    def _provider(provider: str) -> dict[str, str]:
        config = INTEGRATION_PROVIDERS.get(provider)
        if config is None:
            raise NotFoundError("unknown integration provider")
        return config

    def ensure_allowed(self, context: TenantContext, provider: str) -> None:
        if provider == "gemini":
            plans.ensure_ai_configurable(
                context.plan, is_tenant_owner=context.identity.is_tenant_owner
            )
        else:
            TenantResolver.ensure_tenant_admin(context)

    async def authorize(
        self, identity: Identity, provider: str, *, redirect: Optional[str] = None
    ) -> dict[str, Any]:
        config = self._provider(provider)
        context = self.tenancy.load_context(identity)
        self.ensure_allowed(context, provider)
        client_id, redirect_uri = self.settings.oauth_client(provider)
        if not client_id or not redirect_uri:
            logger.error("integration_not_configured", provider=provider)
            raise ServerError("integration is not configured")
        if redirect and (not redirect.startswith("/") or redirect.startswith("//")):
            raise ValidationError("redirect must be a relative path")
        state = self.tokens.issue_purpose_token(
            {"user_id": context.user.id, "redirect": redirect or "/"},
            oauth_purpose(provider),
        )
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": config["scope"],
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        logger.info("integration_authorize_started", provider=provider, user_id=context.user.id)
        return {"authorization_url": f"{config['auth_url']}?{urlencode(params)}", "state": state}

    async def complete(self, provider: str, *, code: str, state: str) -> dict[str, Any]:
        self._provider(provider)
        if not code:
            raise ValidationError("authorization code missing")
        try:
            payload = self.tokens.verify_purpose_token(state, oauth_purpose(provider))
        except InvalidTokenError as exc:
            raise AuthenticationError("invalid or expired authorization state") from exc
        user_id = payload.get("user_id")
        user = self.store.get_user(user_id) if user_id else None
        if user is None:
            raise AuthenticationError("invalid or expired authorization state")
        # Re-check against live records; the plan or role may have changed mid-redirect
        context = self.tenancy.load_context(Identity.from_user(user))
        self.ensure_allowed(context, provider)
        sealed = self.keys.encrypt_payload(context.tenant_id, code)
        grant = self.store.save_integration_grant(
            IntegrationGrant(
                owner_professional_id=context.tenant_id,
                provider=provider,
                sealed_secret=sealed.ciphertext,
                key_version=sealed.key_version,
                iv=sealed.iv,
                granted_by=user.id,
            )
        )
        logger.info("integration_connected", provider=provider, tenant_id=context.tenant_id)
        return {
            "provider": provider,
            "connected": True,
            "granted_at": grant.granted_at.isoformat(),
            "redirect": payload.get("redirect") or "/",
        }

    async def store_api_key(
        self, identity: Identity, provider: str, *, api_key: str, label: Optional[str] = None
    ) -> dict[str, Any]:
        """Seal a provider API key with the tenant key; replaces any stored credential."""
        self._provider(provider)
        if provider not in API_KEY_PROVIDERS:
            raise ValidationError("this integration does not accept API keys")
        context = self.tenancy.load_context(identity)
        self.ensure_allowed(context, provider)
        clean_key = (api_key or "").strip()
        if not clean_key:
            raise ValidationError("api key is required")
        sealed = self.keys.encrypt_payload(context.tenant_id, clean_key)
        grant = self.store.save_integration_grant(
            IntegrationGrant(
                owner_professional_id=context.tenant_id,
                provider=provider,
                sealed_secret=sealed.ciphertext,
                key_version=sealed.key_version,
                iv=sealed.iv,
                granted_by=context.user.id,
                credential_type="api_key",
                label=(label or "").strip() or None,
            )
        )
        logger.info("integration_api_key_stored", provider=provider, tenant_id=context.tenant_id)
        return self._grant_status(provider, grant, can_manage=True)

    async def status(self, identity: Identity, provider: str) -> dict[str, Any]:
        """Connection state for any member of the tenant; secrets never leave the store."""
        self._provider(provider)
        context = self.tenancy.load_context(identity)
        try:
            self.ensure_allowed(context, provider)
            can_manage = True
        except ForbiddenError:
            can_manage = False
        grant = self.store.get_integration_grant(context.tenant_id, provider)
        if provider in API_KEY_PROVIDERS and not plans.plan_supports_capability(
            context.plan, "aiInsights"
        ):
            # Credentials kept from a lapsed plan are not usable
            grant = None
        return self._grant_status(provider, grant, can_manage=can_manage)

    async def disconnect(self, identity: Identity, provider: str) -> dict[str, Any]:
        self._provider(provider)
        context = self.tenancy.load_context(identity)
        self.ensure_allowed(context, provider)
        removed = self.store.delete_integration_grant(context.tenant_id, provider)
        logger.info(
            "integration_disconnected", provider=provider, tenant_id=context.tenant_id, removed=removed
        )
        return {"provider": provider, "connected": False, "removed": removed}

    def _grant_status(
        self, provider: str, grant: Optional[IntegrationGrant], *, can_manage: bool
    ) -> dict[str, Any]:
        client_id, redirect_uri = self.settings.oauth_client(provider)
        return {
            "provider": provider,
            "configured": bool(client_id and redirect_uri),
            "connected": grant is not None,
            "credential_type": grant.credential_type if grant else None,
            "label": grant.label if grant else None,
            "connected_at": grant.granted_at.isoformat() if grant else None,
            "can_manage": can_manage,
        }
