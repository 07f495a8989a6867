from __future__ import annotations

import hmac
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from clinicore.logging import get_logger
from clinicore.storage.common import (
    deserialize_key_record,
    deserialize_record,
    dump_snapshot,
    serialize_record,
)
from clinicore.storage.errors import AccountRestricted, ConstraintViolation
from clinicore.storage.models import (
    Clinic,
    EncryptionKeyRecord,
    IntegrationGrant,
    KeyVersion,
    Patient,
    StaffInvitation,
    TwoFactorChallenge,
    User,
    new_id,
    utcnow,
)

# Fields callers may change through update_user; id and identifier are immutable
_MUTABLE_USER_FIELDS = frozenset(
    {
        "name",
        "email",
        "password_hash",
        "subscription_plan",
        "subscription_status",
        "trial_ends_at",
        "team_role",
        "team_clinic_id",
        "status",
        "status_reason",
    }
)


def _restore_fields(record: Any, previous: Dict[str, Any]) -> None:
    for key, value in previous.items():
        setattr(record, key, value)


class MemoryStore:
    """In-process credential store with optional JSON snapshots on disk."""

    def __init__(self, fs_root: str = "/tmp/clinicore", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.challenges: Dict[str, TwoFactorChallenge] = {}
        self.invitations: Dict[str, StaffInvitation] = {}
        self.clinics: Dict[str, Clinic] = {}
        self.patients: Dict[str, Patient] = {}
        self.encryption_keys: Dict[str, EncryptionKeyRecord] = {}
        self.integration_grants: Dict[tuple[str, str], IntegrationGrant] = {}
        # RLock for all data operations; conditional writes rely on it for atomicity
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "clinicore_store.json"

    # ------------------------------------------------------------------ users

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
    ) -> User:
        with self._data_lock:
            self._ensure_identifier_free(identifier, account_type)
            user = User(
                id=new_id(),
                identifier=identifier,
                account_type=account_type,
                name=name,
                email=email,
                password_hash=password_hash,
                subscription_plan=subscription_plan,
                subscription_status=subscription_status,
                trial_ends_at=trial_ends_at,
                owner_professional_id=owner_professional_id,
                team_role=team_role,
                team_clinic_id=team_clinic_id,
            )
            self.users[user.id] = user
            self._commit(lambda: self.users.pop(user.id, None))
            return user

    def _ensure_identifier_free(self, identifier: str, account_type: str) -> None:
        if any(
            u.identifier == identifier and u.account_type == account_type
            for u in self.users.values()
        ):
            raise ConstraintViolation(
                "identifier already registered", {"field": "identifier"}
            )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def find_user_by_identifier(
        self, identifier: str, account_type: str, *, include_disabled: bool = False
    ) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.identifier == identifier and u.account_type == account_type
                ),
                None,
            )
        if user is not None and not user.is_active and not include_disabled:
            raise AccountRestricted(
                "account is disabled", {"status": user.status, "reason": user.status_reason}
            )
        return user

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            previous = {key: getattr(user, key) for key in (*changes, "updated_at")}
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._commit(lambda: _restore_fields(user, previous))
            return user

    def list_staff(self, owner_professional_id: str) -> List[User]:
        with self._data_lock:
            staff = [
                u for u in self.users.values() if u.owner_professional_id == owner_professional_id
            ]
        return sorted(staff, key=lambda u: u.created_at)

    # ------------------------------------------------------- two-factor codes

    def upsert_two_factor_challenge(self, challenge: TwoFactorChallenge) -> TwoFactorChallenge:
        with self._data_lock:
            superseded = self.challenges.get(challenge.user_id)
            self.challenges[challenge.user_id] = challenge
            self._commit(lambda: self._restore_entry(self.challenges, challenge.user_id, superseded))
            return challenge

    def get_two_factor_challenge(self, user_id: str) -> Optional[TwoFactorChallenge]:
        with self._data_lock:
            return self.challenges.get(user_id)

    def consume_two_factor_challenge(
        self, user_id: str, challenge_id: str, consumed_at: datetime
    ) -> bool:
        with self._data_lock:
            challenge = self.challenges.get(user_id)
            if challenge is None or challenge.id != challenge_id:
                return False
            if challenge.consumed_at is not None:
                return False
            challenge.consumed_at = consumed_at
            self._commit(lambda: setattr(challenge, "consumed_at", None))
            return True

    # ------------------------------------------------------- staff invitations

    def _seats_in_use(self, owner_professional_id: str, now: datetime) -> int:
        staff = sum(
            1
            for u in self.users.values()
            if u.owner_professional_id == owner_professional_id and u.status != "removed"
        )
        pending = sum(
            1
            for inv in self.invitations.values()
            if inv.owner_professional_id == owner_professional_id
            and inv.status_at(now) == "pending"
        )
        return staff + pending

    def create_invitation(
        self, invitation: StaffInvitation, *, seat_limit: Optional[int] = None
    ) -> StaffInvitation:
        """Insert a pending invitation.

        With ``seat_limit`` (owner included) the free-seat check and the insert
        happen under one lock, so concurrent invites cannot share the last seat.
        """
        with self._data_lock:
            if any(inv.token == invitation.token for inv in self.invitations.values()):
                raise ConstraintViolation("invitation token collision", {"field": "token"})
            tenant_id = invitation.owner_professional_id
            if any(
                inv.owner_professional_id == tenant_id
                and inv.email == invitation.email
                and inv.status_at(invitation.created_at) == "pending"
                for inv in self.invitations.values()
            ):
                raise ConstraintViolation("pending invitation exists", {"reason": "duplicate"})
            if seat_limit is not None:
                used = self._seats_in_use(tenant_id, invitation.created_at)
                if used >= seat_limit - 1:
                    raise ConstraintViolation(
                        "no staff seats left", {"reason": "seats", "limit": seat_limit, "used": used + 1}
                    )
            self.invitations[invitation.id] = invitation
            self._commit(lambda: self.invitations.pop(invitation.id, None))
            return invitation

    def get_invitation(self, invitation_id: str) -> Optional[StaffInvitation]:
        with self._data_lock:
            return self.invitations.get(invitation_id)

    def get_invitation_by_token(self, token: str) -> Optional[StaffInvitation]:
        with self._data_lock:
            return next(
                (
                    inv
                    for inv in self.invitations.values()
                    if hmac.compare_digest(inv.token.encode(), token.encode())
                ),
                None,
            )

    def list_invitations(self, owner_professional_id: str) -> List[StaffInvitation]:
        with self._data_lock:
            found = [
                inv
                for inv in self.invitations.values()
                if inv.owner_professional_id == owner_professional_id
            ]
        return sorted(found, key=lambda inv: inv.created_at, reverse=True)

    def accept_invitation(
        self,
        token: str,
        *,
        identifier: str,
        name: str,
        password_hash: str,
        accepted_at: datetime,
    ) -> tuple[StaffInvitation, User]:
        """Consume the invitation and create its staff account in one step."""
        with self._data_lock:
            invitation = self.get_invitation_by_token(token)
            if invitation is None:
                raise ConstraintViolation("invitation not found", {"reason": "missing"})
            state = invitation.status_at(accepted_at)
            if state != "pending":
                raise ConstraintViolation("invitation not pending", {"reason": state})
            self._ensure_identifier_free(identifier, "professional")
            user = User(
                id=new_id(),
                identifier=identifier,
                account_type="professional",
                name=name,
                email=invitation.email,
                password_hash=password_hash,
                owner_professional_id=invitation.owner_professional_id,
                team_role=invitation.role,
                team_clinic_id=invitation.clinic_id,
            )
            self.users[user.id] = user
            invitation.consumed_at = accepted_at
            invitation.accepted_user_id = user.id

            def rollback() -> None:
                self.users.pop(user.id, None)
                invitation.consumed_at = None
                invitation.accepted_user_id = None

            self._commit(rollback)
            return invitation, user

    def revoke_invitation(
        self, invitation_id: str, revoked_at: datetime
    ) -> Optional[StaffInvitation]:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if invitation is None or invitation.consumed_at is not None:
                return None
            if invitation.revoked_at is None:
                invitation.revoked_at = revoked_at
                self._commit(lambda: setattr(invitation, "revoked_at", None))
            return invitation

    # ---------------------------------------------------- clinics and patients

    def create_clinic(
        self, owner_professional_id: str, name: str, address: Optional[str] = None
    ) -> Clinic:
        with self._data_lock:
            clinic = Clinic(
                id=new_id(),
                owner_professional_id=owner_professional_id,
                name=name,
                address=address,
            )
            self.clinics[clinic.id] = clinic
            self._commit(lambda: self.clinics.pop(clinic.id, None))
            return clinic

    def get_clinic(self, owner_professional_id: str, clinic_id: str) -> Optional[Clinic]:
        with self._data_lock:
            clinic = self.clinics.get(clinic_id)
        if clinic is None or clinic.owner_professional_id != owner_professional_id:
            return None
        return clinic

    def list_clinics(self, owner_professional_id: str) -> List[Clinic]:
        with self._data_lock:
            owned = [
                c for c in self.clinics.values() if c.owner_professional_id == owner_professional_id
            ]
        return sorted(owned, key=lambda c: c.created_at)

    def update_clinic(
        self, owner_professional_id: str, clinic_id: str, **changes: Any
    ) -> Optional[Clinic]:
        unknown = set(changes) - {"name", "address"}
        if unknown:
            raise ValueError(f"unsupported clinic fields: {sorted(unknown)}")
        with self._data_lock:
            clinic = self.get_clinic(owner_professional_id, clinic_id)
            if clinic is None:
                return None
            previous = {key: getattr(clinic, key) for key in changes}
            for key, value in changes.items():
                setattr(clinic, key, value)
            self._commit(lambda: _restore_fields(clinic, previous))
            return clinic

    def delete_clinic(self, owner_professional_id: str, clinic_id: str) -> Optional[Clinic]:
        """Remove a clinic and unassign the staff, patients and invitations that pointed at it."""
        with self._data_lock:
            clinic = self.get_clinic(owner_professional_id, clinic_id)
            if clinic is None:
                return None
            staff = [
                u
                for u in self.users.values()
                if u.owner_professional_id == owner_professional_id and u.team_clinic_id == clinic_id
            ]
            patients = [
                p
                for p in self.patients.values()
                if p.owner_professional_id == owner_professional_id and p.clinic_id == clinic_id
            ]
            invitations = [
                inv
                for inv in self.invitations.values()
                if inv.owner_professional_id == owner_professional_id and inv.clinic_id == clinic_id
            ]
            del self.clinics[clinic_id]
            for user in staff:
                user.team_clinic_id = None
            for record in (*patients, *invitations):
                record.clinic_id = None

            def rollback() -> None:
                self.clinics[clinic_id] = clinic
                for user in staff:
                    user.team_clinic_id = clinic_id
                for record in (*patients, *invitations):
                    record.clinic_id = clinic_id

            self._commit(rollback)
            return clinic

    def create_patient(
        self,
        owner_professional_id: str,
        name: str,
        *,
        clinic_id: Optional[str] = None,
        identifier: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Patient:
        with self._data_lock:
            if clinic_id is not None and self.get_clinic(owner_professional_id, clinic_id) is None:
                raise ConstraintViolation("clinic not owned by tenant", {"field": "clinic_id"})
            patient = Patient(
                id=new_id(),
                owner_professional_id=owner_professional_id,
                name=name,
                clinic_id=clinic_id,
                identifier=identifier,
                email=email,
            )
            self.patients[patient.id] = patient
            self._commit(lambda: self.patients.pop(patient.id, None))
            return patient

    def get_patient(self, owner_professional_id: str, patient_id: str) -> Optional[Patient]:
        with self._data_lock:
            patient = self.patients.get(patient_id)
        if patient is None or patient.owner_professional_id != owner_professional_id:
            return None
        return patient

    def list_patients(
        self, owner_professional_id: str, clinic_id: Optional[str] = None
    ) -> List[Patient]:
        with self._data_lock:
            found = [
                p
                for p in self.patients.values()
                if p.owner_professional_id == owner_professional_id
                and (clinic_id is None or p.clinic_id == clinic_id)
            ]
        return sorted(found, key=lambda p: p.created_at)

    # --------------------------------------------------------- encryption keys

    def get_encryption_key(self, tenant_id: str) -> Optional[EncryptionKeyRecord]:
        with self._data_lock:
            return self.encryption_keys.get(tenant_id)

    def insert_encryption_key(self, record: EncryptionKeyRecord) -> EncryptionKeyRecord:
        with self._data_lock:
            if record.tenant_id in self.encryption_keys:
                raise ConstraintViolation(
                    "encryption key already exists", {"tenant_id": record.tenant_id}
                )
            self.encryption_keys[record.tenant_id] = record
            self._commit(lambda: self.encryption_keys.pop(record.tenant_id, None))
            return record

    def swap_current_key(
        self, tenant_id: str, expected_version: int, new_key: KeyVersion
    ) -> Optional[EncryptionKeyRecord]:
        """Install ``new_key`` only if the current version is still ``expected_version``."""
        with self._data_lock:
            record = self.encryption_keys.get(tenant_id)
            if record is None or record.current.version != expected_version:
                return None
            previous = record.current
            # Build the replacement first so readers never see a record without a current key
            updated = EncryptionKeyRecord(
                tenant_id=tenant_id,
                current=new_key,
                history=[
                    *record.history,
                    KeyVersion(
                        version=previous.version,
                        wrapped_key=previous.wrapped_key,
                        created_at=previous.created_at,
                        retired_at=new_key.created_at,
                    ),
                ],
                updated_at=new_key.created_at,
            )
            self.encryption_keys[tenant_id] = updated
            # A key that never reached disk must not become current
            self._commit(lambda: self.encryption_keys.__setitem__(tenant_id, record))
            return updated

    # ------------------------------------------------------------ integrations

    def save_integration_grant(self, grant: IntegrationGrant) -> IntegrationGrant:
        key = (grant.owner_professional_id, grant.provider)
        with self._data_lock:
            replaced = self.integration_grants.get(key)
            self.integration_grants[key] = grant
            self._commit(lambda: self._restore_entry(self.integration_grants, key, replaced))
            return grant

    def get_integration_grant(
        self, owner_professional_id: str, provider: str
    ) -> Optional[IntegrationGrant]:
        with self._data_lock:
            return self.integration_grants.get((owner_professional_id, provider))

    def delete_integration_grant(self, owner_professional_id: str, provider: str) -> bool:
        key = (owner_professional_id, provider)
        with self._data_lock:
            removed = self.integration_grants.pop(key, None)
            if removed is None:
                return False
            self._commit(lambda: self._restore_entry(self.integration_grants, key, removed))
            return True

    # ------------------------------------------------------------- persistence

    @staticmethod
    def _restore_entry(table: Dict[Any, Any], key: Any, previous: Any) -> None:
        if previous is None:
            table.pop(key, None)
        else:
            table[key] = previous

    def _commit(self, rollback: Callable[[], None]) -> None:
        """Persist the snapshot; undo the in-memory change when the write fails."""
        try:
            self._persist_state()
        except Exception:
            rollback()
            self.logger.error("memory_store_write_rolled_back")
            raise

    def _persist_state(self) -> None:
        if not self.persist:
            return
        with self._data_lock:
            state = {
                "users": [serialize_record(u) for u in self.users.values()],
                "challenges": [serialize_record(c) for c in self.challenges.values()],
                "invitations": [serialize_record(i) for i in self.invitations.values()],
                "clinics": [serialize_record(c) for c in self.clinics.values()],
                "patients": [serialize_record(p) for p in self.patients.values()],
                "encryption_keys": [
                    serialize_record(r) for r in self.encryption_keys.values()
                ],
                "integration_grants": [
                    serialize_record(g) for g in self.integration_grants.values()
                ],
            }
            path = self._state_path()
            try:
                path.write_text(dump_snapshot(state))
            except OSError as exc:
                raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        with self._data_lock:
            self.users = {u["id"]: deserialize_record(User, u) for u in data.get("users", [])}
            self.challenges = {
                c["user_id"]: deserialize_record(TwoFactorChallenge, c)
                for c in data.get("challenges", [])
            }
            self.invitations = {
                i["id"]: deserialize_record(StaffInvitation, i)
                for i in data.get("invitations", [])
            }
            self.clinics = {
                c["id"]: deserialize_record(Clinic, c) for c in data.get("clinics", [])
            }
            self.patients = {
                p["id"]: deserialize_record(Patient, p) for p in data.get("patients", [])
            }
            self.encryption_keys = {
                r["tenant_id"]: deserialize_key_record(r)
                for r in data.get("encryption_keys", [])
            }
            self.integration_grants = {}
            for raw in data.get("integration_grants", []):
                grant = deserialize_record(IntegrationGrant, raw)
                self.integration_grants[(grant.owner_professional_id, grant.provider)] = grant
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True
