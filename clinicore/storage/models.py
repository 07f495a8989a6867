from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

ACCOUNT_TYPES = ("professional", "patient")
TEAM_ROLES = ("admin", "professional", "assistant")
STAFF_STATUSES = ("active", "inactive", "removed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    identifier: str
    account_type: str = "professional"
    name: str = ""
    email: Optional[str] = None
    password_hash: Optional[str] = None
    subscription_plan: Optional[str] = None
    subscription_status: Optional[str] = None
    trial_ends_at: Optional[datetime] = None
    owner_professional_id: Optional[str] = None
    team_role: Optional[str] = None
    team_clinic_id: Optional[str] = None
    status: str = "active"
    status_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def owner_tenant_id(self) -> str:
        return self.owner_professional_id or self.id


@dataclass
class TwoFactorChallenge:
    user_id: str
    code_digest: str
    created_at: datetime
    expires_at: datetime
    id: str = field(default_factory=new_id)
    consumed_at: Optional[datetime] = None

    @classmethod
    def new(cls, user_id: str, code_digest: str, ttl_minutes: int = 5) -> "TwoFactorChallenge":
        now = utcnow()
        return cls(
            user_id=user_id,
            code_digest=code_digest,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )


@dataclass
class StaffInvitation:
    id: str
    owner_professional_id: str
    email: str
    role: str
    token: str
    created_at: datetime
    expires_at: datetime
    clinic_id: Optional[str] = None
    consumed_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    accepted_user_id: Optional[str] = None

    def status_at(self, now: datetime) -> str:
        if self.consumed_at is not None:
            return "accepted"
        if self.revoked_at is not None:
            return "revoked"
        if self.expires_at <= now:
            return "expired"
        return "pending"


@dataclass
class Clinic:
    id: str
    owner_professional_id: str
    name: str
    address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Patient:
    id: str
    owner_professional_id: str
    name: str
    clinic_id: Optional[str] = None
    identifier: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SubscriptionSummary:
    plan: str
    status: Optional[str] = None
    trial_ends_at: Optional[datetime] = None


@dataclass
class KeyVersion:
    version: int
    wrapped_key: str
    created_at: datetime
    retired_at: Optional[datetime] = None


@dataclass
class EncryptionKeyRecord:
    tenant_id: str
    current: KeyVersion
    history: List[KeyVersion] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)

    def find_version(self, version: int) -> Optional[KeyVersion]:
        if self.current.version == version:
            return self.current
        for entry in self.history:
            if entry.version == version:
                return entry
        return None


@dataclass
class IntegrationGrant:
    """One stored credential per tenant and provider, sealed with the tenant key."""

    owner_professional_id: str
    provider: str
    sealed_secret: str
    key_version: int
    iv: str
    granted_by: str
    # "authorization_code" from the OAuth callback or "api_key" stored directly
    credential_type: str = "authorization_code"
    label: Optional[str] = None
    granted_at: datetime = field(default_factory=utcnow)
