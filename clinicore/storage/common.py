"""Storage contract shared by the service layer and the backing stores.

Services only see ``CredentialStore``; the memory store implements it and a
database-backed store would implement the same calls. Conditional writes
(``consume_*``, ``swap_current_key``) are the only places concurrency is
resolved, so every implementation must make them atomic.
"""

from __future__ import annotations

import json
from dataclasses import asdict, fields, is_dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Type, TypeVar

from clinicore.storage.models import (
    Clinic,
    EncryptionKeyRecord,
    IntegrationGrant,
    KeyVersion,
    Patient,
    StaffInvitation,
    TwoFactorChallenge,
    User,
)

T = TypeVar("T")


class CredentialStore(Protocol):
    # users
    def create_user(
        self,
        identifier: str,
        account_type: str,
        *,
        name: str,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        subscription_plan: Optional[str] = None,
        subscription_status: Optional[str] = None,
        trial_ends_at: Optional[datetime] = None,
        owner_professional_id: Optional[str] = None,
        team_role: Optional[str] = None,
        team_clinic_id: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def find_user_by_identifier(
        self, identifier: str, account_type: str, *, include_disabled: bool = False
    ) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    def list_staff(self, owner_professional_id: str) -> List[User]: ...

    # two-factor challenges
    def upsert_two_factor_challenge(self, challenge: TwoFactorChallenge) -> TwoFactorChallenge: ...

    def get_two_factor_challenge(self, user_id: str) -> Optional[TwoFactorChallenge]: ...

    def consume_two_factor_challenge(
        self, user_id: str, challenge_id: str, consumed_at: datetime
    ) -> bool: ...

    # staff invitations
    def create_invitation(
        self, invitation: StaffInvitation, *, seat_limit: Optional[int] = None
    ) -> StaffInvitation: ...

    def get_invitation(self, invitation_id: str) -> Optional[StaffInvitation]: ...

    def get_invitation_by_token(self, token: str) -> Optional[StaffInvitation]: ...

    def list_invitations(self, owner_professional_id: str) -> List[StaffInvitation]: ...

    def accept_invitation(
        self,
        token: str,
        *,
        identifier: str,
        name: str,
        password_hash: str,
        accepted_at: datetime,
    ) -> tuple[StaffInvitation, User]: ...

    def revoke_invitation(
        self, invitation_id: str, revoked_at: datetime
    ) -> Optional[StaffInvitation]: ...

    # clinics and patients
    def create_clinic(
        self, owner_professional_id: str, name: str, address: Optional[str] = None
    ) -> Clinic: ...

    def get_clinic(self, owner_professional_id: str, clinic_id: str) -> Optional[Clinic]: ...

    def list_clinics(self, owner_professional_id: str) -> List[Clinic]: ...

    def update_clinic(
        self, owner_professional_id: str, clinic_id: str, **changes: Any
    ) -> Optional[Clinic]: ...

    def delete_clinic(self, owner_professional_id: str, clinic_id: str) -> Optional[Clinic]: ...

    def create_patient(
        self,
        owner_professional_id: str,
        name: str,
        *,
        clinic_id: Optional[str] = None,
        identifier: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Patient: ...

    def get_patient(self, owner_professional_id: str, patient_id: str) -> Optional[Patient]: ...

    def list_patients(
        self, owner_professional_id: str, clinic_id: Optional[str] = None
    ) -> List[Patient]: ...

    # encryption keys
    def get_encryption_key(self, tenant_id: str) -> Optional[EncryptionKeyRecord]: ...

    def insert_encryption_key(self, record: EncryptionKeyRecord) -> EncryptionKeyRecord: ...

    def swap_current_key(
        self, tenant_id: str, expected_version: int, new_key: KeyVersion
    ) -> Optional[EncryptionKeyRecord]: ...

    # integrations
    def save_integration_grant(self, grant: IntegrationGrant) -> IntegrationGrant: ...

    def get_integration_grant(
        self, owner_professional_id: str, provider: str
    ) -> Optional[IntegrationGrant]: ...

    def delete_integration_grant(self, owner_professional_id: str, provider: str) -> bool: ...

# ============================================================================
# JSON SNAPSHOT HELPERS
# ============================================================================


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [_encode_value(item) for item in value]
    if isinstance(value, dict):
        return {key: _encode_value(item) for key, item in value.items()}
    return value


def serialize_record(record: Any) -> Dict[str, Any]:
    """Flatten a model dataclass into JSON-safe primitives."""
    if not is_dataclass(record):
        raise TypeError(f"not a dataclass record: {type(record).__name__}")
    return _encode_value(asdict(record))


def deserialize_record(cls: Type[T], data: Dict[str, Any]) -> T:
    """Rebuild a model dataclass, parsing ISO timestamps on datetime fields."""
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if value is not None and "datetime" in str(f.type):
            value = datetime.fromisoformat(value)
        kwargs[f.name] = value
    return cls(**kwargs)


def deserialize_key_record(data: Dict[str, Any]) -> EncryptionKeyRecord:
    return EncryptionKeyRecord(
        tenant_id=data["tenant_id"],
        current=deserialize_record(KeyVersion, data["current"]),
        history=[deserialize_record(KeyVersion, entry) for entry in data.get("history", [])],
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )


def dump_snapshot(state: Dict[str, Any]) -> str:
    return json.dumps(state, indent=2, sort_keys=True)
