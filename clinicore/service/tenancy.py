from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from clinicore.logging import get_logger
from clinicore.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidClinicError,
    NoClinicAssignedError,
    NotFoundError,
    ServerError,
    ServiceError,
)
from clinicore.service.identity import Identity
from clinicore.service.plans import DEFAULT_PLAN
from clinicore.storage.common import CredentialStore
from clinicore.storage.models import Clinic, Patient, SubscriptionSummary, User

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class TenantContext:
    """Live view of the caller: their current record and the tenant's plan."""

    identity: Identity
    user: User
    owner: User
    subscription: SubscriptionSummary

    @property
    def tenant_id(self) -> str:
        return self.owner.id

    @property
    def plan(self) -> str:
        return self.subscription.plan


@dataclass(frozen=True)
class ClinicAssignment:
    tenant_id: str
    clinic_id: Optional[str]
    requested_clinic_id: Optional[str] = None
    substituted: bool = False


@dataclass(frozen=True)
class RecordAccess:
    tenant_id: str
    patient: Patient


class TenantResolver:
    """Works out which tenant, clinic and records a caller may act on.

    Holds no state between calls; every decision re-reads the store so a
    role or clinic change takes effect on the caller's next request.
    """

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return fn(*args)
        except ServiceError:
            raise
        except Exception as exc:
            logger.exception("tenant_lookup_failed", operation=operation, error=str(exc))
            raise ServerError("service temporarily unavailable") from exc

    def load_context(self, identity: Identity) -> TenantContext:
        user = self._call("get_user", self.store.get_user, identity.id)
        if user is None:
            raise AuthenticationError("session user no longer exists")
        if not user.is_active:
            raise ForbiddenError("account is disabled", detail={"status": user.status})
        if user.owner_professional_id:
            owner = self._call("get_owner", self.store.get_user, user.owner_professional_id)
            if owner is None:
                # A staff account whose tenant vanished cannot be resolved safely
                logger.error("tenant_owner_missing", user_id=user.id)
                raise ServerError("service temporarily unavailable")
            if not owner.is_active:
                raise ForbiddenError("account is disabled", detail={"status": owner.status})
        else:
            owner = user
        subscription = SubscriptionSummary(
            plan=owner.subscription_plan or DEFAULT_PLAN,
            status=owner.subscription_status,
            trial_ends_at=owner.trial_ends_at,
        )
        live = Identity.from_user(user, subscription_plan=subscription.plan)
        return TenantContext(identity=live, user=user, owner=owner, subscription=subscription)

    # ------------------------------------------------------ clinic assignment

    def _owned_clinic(self, tenant_id: str, clinic_id: str) -> Optional[Clinic]:
        return self._call("get_clinic", self.store.get_clinic, tenant_id, clinic_id)

    def resolve_clinic_assignment(
        self, identity: Identity, requested_clinic_id: Optional[str] = None
    ) -> ClinicAssignment:
        """Pick the clinic a tenant-scoped write or listing applies to.

        Restricted team members always get their assigned clinic, whatever
        they asked for. Owners and tenant admins may choose any clinic the
        tenant owns, falling back to their own assignment or no clinic.
        """
        context = self.load_context(identity)
        live = context.identity
        tenant_id = context.tenant_id
        requested = requested_clinic_id or None

        if live.is_team_restricted:
            assigned = live.team_clinic_id
            if not assigned:
                raise NoClinicAssignedError()
            if self._owned_clinic(tenant_id, assigned) is None:
                raise InvalidClinicError(
                    "assigned clinic no longer exists; ask your account administrator"
                )
            substituted = requested is not None and requested != assigned
            if substituted:
                logger.info(
                    "clinic_request_substituted",
                    user_id=live.id,
                    tenant_id=tenant_id,
                    requested_clinic_id=requested,
                    clinic_id=assigned,
                )
            return ClinicAssignment(
                tenant_id=tenant_id,
                clinic_id=assigned,
                requested_clinic_id=requested,
                substituted=substituted,
            )

        if requested is not None:
            if self._owned_clinic(tenant_id, requested) is None:
                raise InvalidClinicError()
            return ClinicAssignment(
                tenant_id=tenant_id, clinic_id=requested, requested_clinic_id=requested
            )

        fallback = live.team_clinic_id
        if fallback and self._owned_clinic(tenant_id, fallback) is None:
            fallback = None
        return ClinicAssignment(tenant_id=tenant_id, clinic_id=fallback)

    # -------------------------------------------------------- record access

    def resolve_record_access(self, identity: Identity, patient_id: str) -> RecordAccess:
        """Return the patient if the caller may see it; NotFound otherwise.

        Missing records, records of another tenant and records of another
        clinic all produce the same error.
        """
        context = self.load_context(identity)
        live = context.identity
        patient = self._call(
            "get_patient", self.store.get_patient, context.tenant_id, patient_id
        )
        if patient is None:
            raise NotFoundError("patient not found")
        if live.is_team_restricted and (
            not live.team_clinic_id or patient.clinic_id != live.team_clinic_id
        ):
            raise NotFoundError("patient not found")
        return RecordAccess(tenant_id=context.tenant_id, patient=patient)

    # -------------------------------------------------- team management

    @staticmethod
    def ensure_tenant_admin(context: TenantContext) -> None:
        if context.identity.is_tenant_owner or context.identity.is_tenant_admin:
            return
        raise ForbiddenError("only the account administrator can do this")

    @staticmethod
    def ensure_tenant_owner(context: TenantContext) -> None:
        if not context.identity.is_tenant_owner:
            raise ForbiddenError("only the account owner can do this")

    @staticmethod
    def ensure_can_manage_staff(
        context: TenantContext, *, target_role: Optional[str], target_clinic_id: Optional[str]
    ) -> None:
        """Owners and admins manage anyone; professionals manage their clinic's assistants."""
        live = context.identity
        if live.is_tenant_owner or live.is_tenant_admin:
            return
        if (
            live.team_role == "professional"
            and target_role == "assistant"
            and live.team_clinic_id is not None
            and target_clinic_id == live.team_clinic_id
        ):
            return
        raise ForbiddenError("you do not have permission to manage this staff member")
