from __future__ import annotations

import re
import unicodedata
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "limit_exceeded",
    "not_found",
    "rate_limited",
    "validation_error",
    "already_used",
    "conflict",
    "server_error",
    "delivery_failed",
})


class ErrorBody(BaseModel):
    """Error part of the response envelope with a stable code."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
# National identity numbers: digits with optional letters, no separators
_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9]{5,20}$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_identifier(value: str) -> str:
    cleaned = _normalize_unicode(value).strip().replace(".", "").replace("-", "")
    if not _IDENTIFIER_PATTERN.match(cleaned):
        raise ValueError("identifier must be 5-20 letters or digits")
    return cleaned.upper()


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("name must not be empty")
    return cleaned


Locale = Literal["es", "en"]
AccountType = Literal["professional", "patient"]


class RegisterRequest(BaseModel):
    dni: str = Field(..., max_length=32)
    name: str = Field(..., max_length=200)
    email: str
    password: str

    @field_validator("dni")
    @classmethod
    def _validate_dni(cls, value: str) -> str:
        return _validate_identifier(value)

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    dni: str = Field(..., max_length=32)
    password: str = Field(..., max_length=128)
    type: AccountType = "professional"
    locale: Optional[Locale] = None

    @field_validator("dni")
    @classmethod
    def _validate_dni(cls, value: str) -> str:
        return _validate_identifier(value)


class TwoFactorVerifyRequest(BaseModel):
    dni: str = Field(..., max_length=32)
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")
    login_token: str = Field(..., min_length=16, max_length=4096)
    type: AccountType = "professional"

    @field_validator("dni")
    @classmethod
    def _validate_dni(cls, value: str) -> str:
        return _validate_identifier(value)


class LoginResponse(BaseModel):
    requires_two_factor: bool = True
    expires_in_minutes: int
    login_token: str


class SessionResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    user: dict


class InvitationAcceptRequest(BaseModel):
    token: str = Field(..., min_length=16, max_length=256)
    dni: str = Field(..., max_length=32)
    name: str = Field(..., max_length=200)
    password: str

    @field_validator("dni")
    @classmethod
    def _validate_dni(cls, value: str) -> str:
        return _validate_identifier(value)

    @field_validator("name")
    @classmethod
    def _validate_accept_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ClinicCreateRequest(BaseModel):
    name: str = Field(..., max_length=200)
    address: Optional[str] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def _validate_clinic_name(cls, value: str) -> str:
        return _validate_name(value)


class ClinicUpdateRequest(BaseModel):
    """Partial clinic update; an explicit ``address: null`` clears the address."""

    name: Optional[str] = Field(default=None, max_length=200)
    address: Optional[str] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def _validate_clinic_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value) if value is not None else None


class InvitationCreateRequest(BaseModel):
    email: str
    role: Literal["admin", "professional", "assistant"]
    clinic_id: Optional[str] = Field(default=None, max_length=64)
    locale: Optional[Locale] = None

    @field_validator("email")
    @classmethod
    def _validate_invitee_email(cls, value: str) -> str:
        return _validate_email(value)


class StaffUpdateRequest(BaseModel):
    """Partial staff update; an explicit ``clinic_id: null`` clears the clinic."""

    status: Optional[Literal["active", "inactive", "removed"]] = None
    reason: Optional[str] = Field(default=None, max_length=500)
    clinic_id: Optional[str] = Field(default=None, max_length=64)
    role: Optional[Literal["admin", "professional", "assistant"]] = None


class PatientCreateRequest(BaseModel):
    name: str = Field(..., max_length=200)
    clinic_id: Optional[str] = Field(default=None, max_length=64)
    dni: Optional[str] = Field(default=None, max_length=32)
    email: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _validate_patient_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("dni")
    @classmethod
    def _validate_patient_dni(cls, value: Optional[str]) -> Optional[str]:
        return _validate_identifier(value) if value else None

    @field_validator("email")
    @classmethod
    def _validate_patient_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None


class KeyStatusResponse(BaseModel):
    tenant_id: str
    version: int
    created_at: str
    rotated_at: Optional[str] = None
    retained_versions: list[int] = Field(default_factory=list)


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


class ApiKeyRequest(BaseModel):
    api_key: str = Field(..., min_length=1, max_length=512)
    label: Optional[str] = Field(default=None, max_length=100)

    @field_validator("api_key")
    @classmethod
    def _strip_api_key(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("api key is required")
        return value
