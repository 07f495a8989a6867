from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from clinicore.logging import get_logger
from clinicore.service.errors import (
    AlreadyUsedError,
    AuthenticationError,
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from clinicore.service.identity import Identity
from clinicore.service.plans import DEFAULT_PLAN, trial_end_for
from clinicore.service.sessions import SessionResolver
from clinicore.service.tenancy import TenantResolver
from clinicore.service.tokens import TokenService
from clinicore.service import two_factor
from clinicore.service.two_factor import TwoFactorEngine
from clinicore.storage.common import CredentialStore
from clinicore.storage.errors import ConstraintViolation
from clinicore.storage.models import StaffInvitation, User

logger = get_logger(__name__)

# Purpose of the token handed out after the password step of a login
LOGIN_TOKEN_PURPOSE = "two_factor:login"

# User-facing messages per failed two-factor reason
_TWO_FACTOR_MESSAGES = {
    two_factor.NOT_REQUESTED: "no verification code was requested",
    two_factor.ALREADY_USED: "verification code already used",
    two_factor.EXPIRED: "verification code expired; request a new one",
    two_factor.INVALID_CODE: "incorrect verification code",
    two_factor.LOCKED_OUT: "too many attempts; try again later",
}


def public_user(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "dni": user.identifier,
        "type": user.account_type,
        "name": user.name,
        "email": user.email,
        "owner_professional_id": user.owner_professional_id,
        "team_role": user.team_role,
        "team_clinic_id": user.team_clinic_id,
        "status": user.status,
        "subscription_plan": user.subscription_plan,
        "subscription_status": user.subscription_status,
        "trial_ends_at": user.trial_ends_at.isoformat() if user.trial_ends_at else None,
    }


class AuthService:
    """Password login, two-factor verification, sessions and invitation acceptance.

    A session token is issued only after a valid two-factor code; password
    checks on their own just trigger a code.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        two_factor_engine: TwoFactorEngine,
        sessions: SessionResolver,
        tenancy: TenantResolver,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.two_factor = two_factor_engine
        self.sessions = sessions
        self.tenancy = tenancy
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -------------------------------------------------------------- passwords

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            self.logger.warning("password_record_missing", user_id=user.id)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user.id)
            return False

    def _authenticate(self, identifier: str, account_type: str, password: str) -> User:
        # AccountRestricted propagates so disabled accounts get a 403, not a 401
        user = self.store.find_user_by_identifier(identifier, account_type)
        if user is None or not self._verify_password(user, password):
            raise AuthenticationError("invalid credentials")
        return user

    # ----------------------------------------------------------- registration

    async def register_professional(
        self, *, identifier: str, name: str, email: str, password: str
    ) -> User:
        now = self._now()
        try:
            user = self.store.create_user(
                identifier,
                "professional",
                name=name,
                email=email,
                password_hash=self.hash_password(password),
                subscription_plan=DEFAULT_PLAN,
                subscription_status="trialing",
                trial_ends_at=trial_end_for(now),
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "an account with this identifier already exists", detail=exc.detail
            ) from exc
        self.logger.info("professional_registered", user_id=user.id)
        return user

    # ------------------------------------------------------------------ login

    async def login(
        self,
        *,
        identifier: str,
        password: str,
        account_type: str = "professional",
        locale: Optional[str] = None,
    ) -> dict[str, Any]:
        """Check the password and email a fresh two-factor code."""
        user = self._authenticate(identifier, account_type, password)
        await self.two_factor.send(user, locale=locale)
        self.logger.info("login_two_factor_required", user_id=user.id)
        return {
            "requires_two_factor": True,
            "expires_in_minutes": self.two_factor.ttl_minutes,
            "login_token": self.tokens.issue_purpose_token(
                {"user_id": user.id},
                LOGIN_TOKEN_PURPOSE,
                ttl_seconds=self.two_factor.ttl_minutes * 60,
            ),
        }

    async def verify_two_factor(
        self,
        *,
        identifier: str,
        code: str,
        login_token: str,
        account_type: str = "professional",
    ) -> tuple[User, str]:
        """Exchange a code for a session.

        The login token proves the password step happened, so failed codes
        from anyone without the password never count toward the lockout.
        """
        try:
            pending = self.tokens.verify_purpose_token(login_token, LOGIN_TOKEN_PURPOSE)
        except InvalidTokenError as exc:
            raise AuthenticationError("sign-in expired; enter your password again") from exc
        user = self.store.find_user_by_identifier(identifier, account_type)
        if user is None or pending.get("user_id") != user.id:
            raise AuthenticationError("sign-in expired; enter your password again")
        result = await self.two_factor.validate(user.id, code)
        if not result.valid:
            message = _TWO_FACTOR_MESSAGES.get(result.reason, "invalid verification code")
            detail = {"reason": result.reason}
            self.logger.info("two_factor_rejected", user_id=user.id, reason=result.reason)
            if result.reason == two_factor.ALREADY_USED:
                raise AlreadyUsedError(message, detail=detail)
            if result.reason == two_factor.LOCKED_OUT:
                raise RateLimitedError(message, detail=detail)
            raise ValidationError(message, detail=detail)
        identity = self._identity_for(user)
        token = self.tokens.issue_session_token(identity)
        self.logger.info("session_issued", user_id=user.id, tenant_id=identity.owner_tenant_id)
        return user, token

    def _identity_for(self, user: User) -> Identity:
        owner = user
        if user.owner_professional_id:
            owner = self.store.get_user(user.owner_professional_id) or user
        return Identity.from_user(user, subscription_plan=owner.subscription_plan or DEFAULT_PLAN)

    async def me(self, identity: Identity) -> dict[str, Any]:
        """Current account as stored now, not as embedded in the token."""
        user = self.store.find_user_by_identifier(identity.identifier, identity.account_type)
        if user is None or user.id != identity.id:
            raise NotFoundError("user not found")
        context = self.tenancy.load_context(identity)
        profile = public_user(user)
        profile["tenant_id"] = context.tenant_id
        profile["subscription_plan"] = context.plan
        profile["subscription_status"] = context.subscription.status
        return profile

    async def logout(self, token: Optional[str]) -> None:
        if token:
            await self.sessions.revoke(token)

    # ------------------------------------------------------------ invitations

    def _pending_invitation(self, token: str) -> StaffInvitation:
        invitation = self.store.get_invitation_by_token(token) if token else None
        if invitation is None:
            raise ValidationError("invitation is invalid")
        state = invitation.status_at(self._now())
        if state == "accepted":
            raise AlreadyUsedError("invitation already used")
        if state == "revoked":
            raise ValidationError("invitation was revoked")
        if state == "expired":
            raise ValidationError("invitation has expired")
        return invitation

    async def get_invitation_details(self, token: str) -> dict[str, Any]:
        invitation = self._pending_invitation(token)
        owner = self.store.get_user(invitation.owner_professional_id)
        clinic = (
            self.store.get_clinic(invitation.owner_professional_id, invitation.clinic_id)
            if invitation.clinic_id
            else None
        )
        return {
            "email": invitation.email,
            "role": invitation.role,
            "clinic_id": invitation.clinic_id,
            "clinic_name": clinic.name if clinic else None,
            "owner_name": owner.name if owner else None,
            "expires_at": invitation.expires_at.isoformat(),
        }

    async def accept_invitation(
        self, *, token: str, identifier: str, name: str, password: str
    ) -> dict[str, Any]:
        self._pending_invitation(token)
        try:
            invitation, user = self.store.accept_invitation(
                token,
                identifier=identifier,
                name=name,
                password_hash=self.hash_password(password),
                accepted_at=self._now(),
            )
        except ConstraintViolation as exc:
            reason = exc.detail.get("reason")
            if reason == "accepted":
                raise AlreadyUsedError("invitation already used") from exc
            if exc.detail.get("field") == "identifier":
                raise ConflictError("an account with this identifier already exists") from exc
            raise ValidationError("invitation is no longer valid") from exc
        self.logger.info(
            "invitation_accepted",
            invitation_id=invitation.id,
            user_id=user.id,
            tenant_id=invitation.owner_professional_id,
        )
        return {
            "staff": {
                "id": user.id,
                "role": user.team_role,
                "clinic_id": user.team_clinic_id,
                "status": user.status,
            },
            "owner_id": invitation.owner_professional_id,
            "user": public_user(user),
        }
