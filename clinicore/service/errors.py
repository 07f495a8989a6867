from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - already_used (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Missing or malformed input (400)."""
    status_code = 400
    error_code = "validation_error"


class NoEmailOnFileError(ValidationError):
    """The account has no email to deliver a two-factor code to."""

    def __init__(self, message: str = "account has no email on file", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NoClinicAssignedError(ValidationError):
    """A restricted team member has no clinic; the tenant admin must assign one."""

    def __init__(
        self,
        message: str = "no clinic assigned; ask your account administrator to assign one",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidClinicError(ValidationError):
    """Requested clinic does not belong to the caller's tenant."""

    def __init__(self, message: str = "invalid clinic", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AlreadyUsedError(ServiceError):
    """A single-use token or code was already consumed (400)."""
    status_code = 400
    error_code = "already_used"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token failed verification; never says why."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied by role, plan or account state (403)."""
    status_code = 403
    error_code = "forbidden"


class PlanLimitExceededError(ForbiddenError):
    """A plan bound (clinics, staff seats) has been reached."""
    error_code = "limit_exceeded"


class NotFoundError(ServiceError):
    """Requested resource not found, or hidden from the caller (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation or a lost race (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many attempts (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """A collaborator failed; message is always generic (500)."""
    status_code = 500
    error_code = "server_error"


class DeliveryError(ServerError):
    """The notifier could not deliver a message."""
    error_code = "delivery_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NoEmailOnFileError",
    "NoClinicAssignedError",
    "InvalidClinicError",
    "AlreadyUsedError",
    "AuthenticationError",
    "InvalidTokenError",
    "ForbiddenError",
    "PlanLimitExceededError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DeliveryError",
]
