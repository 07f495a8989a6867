from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from clinicore.storage.models import User

# Claims that carry the identity snapshot inside a session token
IDENTITY_CLAIMS = (
    "sub",
    "dni",
    "account_type",
    "name",
    "email",
    "owner_professional_id",
    "team_role",
    "team_clinic_id",
    "subscription_plan",
)


@dataclass(frozen=True)
class Identity:
    """Caller snapshot carried by a session token.

    Role and clinic fields are convenient for routing decisions only; anything
    that grants access is re-checked against live records by the tenancy layer.
    """

    id: str
    identifier: str
    account_type: str
    name: str = ""
    email: Optional[str] = None
    owner_professional_id: Optional[str] = None
    team_role: Optional[str] = None
    team_clinic_id: Optional[str] = None
    subscription_plan: Optional[str] = None
    token_id: Optional[str] = None

    @property
    def owner_tenant_id(self) -> str:
        return self.owner_professional_id or self.id

    @property
    def is_team_member(self) -> bool:
        return bool(self.owner_professional_id)

    @property
    def is_tenant_admin(self) -> bool:
        return self.is_team_member and self.team_role == "admin"

    @property
    def is_team_restricted(self) -> bool:
        """Team members other than admins act inside a single clinic."""
        return self.is_team_member and not self.is_tenant_admin

    @property
    def is_tenant_owner(self) -> bool:
        return not self.is_team_member

    @classmethod
    def from_user(cls, user: User, *, subscription_plan: Optional[str] = None) -> "Identity":
        return cls(
            id=user.id,
            identifier=user.identifier,
            account_type=user.account_type,
            name=user.name,
            email=user.email,
            owner_professional_id=user.owner_professional_id,
            team_role=user.team_role if user.owner_professional_id else None,
            team_clinic_id=user.team_clinic_id,
            subscription_plan=subscription_plan or user.subscription_plan,
        )

    def to_claims(self) -> dict[str, Any]:
        return {
            "sub": self.id,
            "dni": self.identifier,
            "account_type": self.account_type,
            "name": self.name,
            "email": self.email,
            "owner_professional_id": self.owner_professional_id,
            "team_role": self.team_role,
            "team_clinic_id": self.team_clinic_id,
            "subscription_plan": self.subscription_plan,
        }

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "Identity":
        return cls(
            id=str(claims["sub"]),
            identifier=str(claims["dni"]),
            account_type=str(claims["account_type"]),
            name=claims.get("name") or "",
            email=claims.get("email"),
            owner_professional_id=claims.get("owner_professional_id"),
            team_role=claims.get("team_role"),
            team_clinic_id=claims.get("team_clinic_id"),
            subscription_plan=claims.get("subscription_plan"),
            token_id=claims.get("jti"),
        )

    def public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "dni": self.identifier,
            "type": self.account_type,
            "name": self.name,
            "email": self.email,
            "owner_professional_id": self.owner_professional_id,
            "team_role": self.team_role,
            "team_clinic_id": self.team_clinic_id,
            "subscription_plan": self.subscription_plan,
        }
