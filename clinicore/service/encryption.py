from __future__ import annotations

import base64
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from clinicore.logging import get_logger
from clinicore.service.errors import ConflictError, NotFoundError, ServerError, ValidationError
from clinicore.storage.common import CredentialStore
from clinicore.storage.errors import ConstraintViolation
from clinicore.storage.models import EncryptionKeyRecord, KeyVersion, utcnow

logger = get_logger(__name__)

DATA_KEY_BYTES = 32
IV_BYTES = 12


@dataclass(frozen=True)
class KeyStatus:
    tenant_id: str
    version: int
    created_at: datetime
    rotated_at: Optional[datetime] = None
    retained_versions: tuple[int, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "rotated_at": self.rotated_at.isoformat() if self.rotated_at else None,
            "retained_versions": list(self.retained_versions),
        }


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: str
    iv: str
    key_version: int


class KeyManager:
    """Per-tenant data keys, wrapped at rest with the process master key.

    Exactly one version is current per tenant. Rotation installs the next
    version through a compare-and-swap on the store and keeps every retired
    version so older ciphertext stays readable.
    """

    def __init__(self, store: CredentialStore, master_key: bytes) -> None:
        if len(master_key) != DATA_KEY_BYTES:
            raise ValueError("master key must be 32 bytes")
        self.store = store
        self._wrapper = Fernet(base64.urlsafe_b64encode(master_key))

    # ----------------------------------------------------------- key material

    def _new_version(self, version: int) -> KeyVersion:
        data_key = AESGCM.generate_key(bit_length=DATA_KEY_BYTES * 8)
        return KeyVersion(
            version=version,
            wrapped_key=self._wrapper.encrypt(data_key).decode(),
            created_at=utcnow(),
        )

    def _unwrap(self, entry: KeyVersion) -> bytes:
        try:
            return self._wrapper.decrypt(entry.wrapped_key.encode())
        except InvalidToken as exc:
            logger.error("encryption_key_unwrap_failed", version=entry.version)
            raise ServerError("encryption key unavailable") from exc

    @staticmethod
    def _status(record: EncryptionKeyRecord) -> KeyStatus:
        return KeyStatus(
            tenant_id=record.tenant_id,
            version=record.current.version,
            created_at=record.current.created_at,
            rotated_at=record.current.created_at if record.history else None,
            retained_versions=tuple(entry.version for entry in record.history),
        )

    # -------------------------------------------------------------- lifecycle

    def _ensure_record(self, tenant_id: str) -> EncryptionKeyRecord:
        existing = self.store.get_encryption_key(tenant_id)
        if existing is not None:
            return existing
        initial = self._new_version(1)
        try:
            record = self.store.insert_encryption_key(
                EncryptionKeyRecord(tenant_id=tenant_id, current=initial, updated_at=initial.created_at)
            )
        except ConstraintViolation:
            # Another request created it first; theirs is the current key
            record = self.store.get_encryption_key(tenant_id)
            if record is None:
                raise ServerError("encryption key unavailable")
            return record
        logger.info("encryption_key_created", tenant_id=tenant_id, version=1)
        return record

    def ensure_key(self, tenant_id: str) -> KeyStatus:
        try:
            return self._status(self._ensure_record(tenant_id))
        except ServerError:
            raise
        except Exception as exc:
            logger.exception("encryption_key_ensure_failed", tenant_id=tenant_id, error=str(exc))
            raise ServerError("encryption key unavailable") from exc

    def rotate_key(self, tenant_id: str) -> KeyStatus:
        try:
            record = self._ensure_record(tenant_id)
            expected = record.current.version
            replacement = self._new_version(expected + 1)
            updated = self.store.swap_current_key(tenant_id, expected, replacement)
        except ServerError:
            raise
        except Exception as exc:
            logger.exception("encryption_key_rotation_failed", tenant_id=tenant_id, error=str(exc))
            raise ServerError("encryption key rotation failed") from exc
        if updated is None:
            winner = self.store.get_encryption_key(tenant_id)
            logger.warning(
                "encryption_key_rotation_conflict",
                tenant_id=tenant_id,
                expected_version=expected,
                current_version=winner.current.version if winner else None,
            )
            raise ConflictError(
                "encryption key was rotated concurrently",
                detail={"current_version": winner.current.version if winner else None},
            )
        logger.info(
            "encryption_key_rotated",
            tenant_id=tenant_id,
            previous_version=expected,
            version=updated.current.version,
        )
        return self._status(updated)

    def get_status(self, tenant_id: str) -> Optional[KeyStatus]:
        record = self.store.get_encryption_key(tenant_id)
        return self._status(record) if record else None

    # ---------------------------------------------------------------- payloads

    def encrypt_payload(self, tenant_id: str, payload: Union[str, bytes]) -> EncryptedPayload:
        record = self._ensure_record(tenant_id)
        key = self._unwrap(record.current)
        iv = os.urandom(IV_BYTES)
        data = payload.encode() if isinstance(payload, str) else payload
        ciphertext = AESGCM(key).encrypt(iv, data, tenant_id.encode())
        return EncryptedPayload(
            ciphertext=base64.b64encode(ciphertext).decode(),
            iv=base64.b64encode(iv).decode(),
            key_version=record.current.version,
        )

    def decrypt_payload(self, tenant_id: str, encrypted: EncryptedPayload) -> bytes:
        record = self.store.get_encryption_key(tenant_id)
        if record is None:
            raise NotFoundError("no encryption key for tenant")
        entry = record.find_version(encrypted.key_version)
        if entry is None:
            raise NotFoundError("unknown key version", detail={"key_version": encrypted.key_version})
        key = self._unwrap(entry)
        try:
            iv = base64.b64decode(encrypted.iv)
            ciphertext = base64.b64decode(encrypted.ciphertext)
            return AESGCM(key).decrypt(iv, ciphertext, tenant_id.encode())
        except (InvalidTag, ValueError) as exc:
            raise ValidationError("payload could not be decrypted") from exc
