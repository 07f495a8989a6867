from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from clinicore.logging import get_logger, mask_email
from clinicore.service import plans
from clinicore.service.email import EmailService, invitation_url
from clinicore.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidClinicError,
    NotFoundError,
    PlanLimitExceededError,
    ValidationError,
)
from clinicore.service.identity import Identity
from clinicore.service.tenancy import TenantContext, TenantResolver
from clinicore.storage.common import CredentialStore
from clinicore.storage.errors import ConstraintViolation
from clinicore.storage.models import (
    STAFF_STATUSES,
    TEAM_ROLES,
    Clinic,
    StaffInvitation,
    User,
    new_id,
)

logger = get_logger(__name__)

# Sentinel distinguishing "leave the clinic alone" from "clear the clinic"
UNSET: Any = object()


def clinic_dict(clinic: Clinic) -> dict[str, Any]:
    return {
        "id": clinic.id,
        "name": clinic.name,
        "address": clinic.address,
        "created_at": clinic.created_at.isoformat(),
    }


def _staff_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.team_role,
        "clinic_id": user.team_clinic_id,
        "status": user.status,
        "status_reason": user.status_reason,
    }


def _invitation_dict(invitation: StaffInvitation, now: datetime) -> dict[str, Any]:
    return {
        "id": invitation.id,
        "email": invitation.email,
        "role": invitation.role,
        "clinic_id": invitation.clinic_id,
        "status": invitation.status_at(now),
        "expires_at": invitation.expires_at.isoformat(),
    }


class TeamService:
    """Clinics, staff seats and invitations inside one tenant."""

    def __init__(
        self,
        store: CredentialStore,
        tenancy: TenantResolver,
        email: Optional[EmailService] = None,
        *,
        invitation_ttl_days: int = 7,
        base_url: str = "http://localhost:3000",
    ) -> None:
        self.store = store
        self.tenancy = tenancy
        self.email = email
        self.invitation_ttl_days = invitation_ttl_days
        self.base_url = base_url

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _seats_in_use(self, tenant_id: str) -> int:
        """Staff that still hold a seat plus invitations that may claim one."""
        now = self._now()
        staff = [u for u in self.store.list_staff(tenant_id) if u.status != "removed"]
        pending = [
            inv for inv in self.store.list_invitations(tenant_id) if inv.status_at(now) == "pending"
        ]
        return len(staff) + len(pending)

    @staticmethod
    def _ensure_active_subscription(context: TenantContext) -> None:
        plans.ensure_subscription_active(
            context.subscription.status, context.subscription.trial_ends_at
        )

    # --------------------------------------------------------------- overview

    async def overview(self, identity: Identity) -> dict[str, Any]:
        context = self.tenancy.load_context(identity)
        tenant_id = context.tenant_id
        now = self._now()
        clinics = self.store.list_clinics(tenant_id)
        staff = self.store.list_staff(tenant_id)
        invitations = self.store.list_invitations(tenant_id)
        if context.identity.is_team_restricted:
            # Restricted members only see their own clinic's team
            clinic_id = context.identity.team_clinic_id
            clinics = [c for c in clinics if c.id == clinic_id]
            staff = [u for u in staff if u.team_clinic_id == clinic_id]
            invitations = [inv for inv in invitations if inv.clinic_id == clinic_id]
        seat_limit = plans.get_staff_seat_limit(context.plan)
        seats_used = self._seats_in_use(tenant_id)
        return {
            "tenant_id": tenant_id,
            "clinics": [clinic_dict(c) for c in clinics],
            "staff": [_staff_dict(u) for u in staff],
            "invitations": [_invitation_dict(inv, now) for inv in invitations],
            "stats": {
                "plan": plans.get_plan_definition(context.plan).id,
                "subscription_status": context.subscription.status,
                "clinic_limit": plans.get_clinic_limit(context.plan),
                "clinics_used": len(self.store.list_clinics(tenant_id)),
                "seat_limit": seat_limit,
                "seats_used": seats_used + 1,
                "seats_remaining": plans.remaining_staff_seats(context.plan, seats_used),
            },
        }

    # ---------------------------------------------------------------- clinics

    async def create_clinic(
        self, identity: Identity, *, name: str, address: Optional[str] = None
    ) -> Clinic:
        context = self.tenancy.load_context(identity)
        TenantResolver.ensure_tenant_owner(context)
        self._ensure_active_subscription(context)
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("clinic name is required")
        existing = len(self.store.list_clinics(context.tenant_id))
        plans.ensure_can_create_clinic(context.plan, existing)
        clinic = self.store.create_clinic(
            context.tenant_id, clean_name, (address or "").strip() or None
        )
        logger.info("clinic_created", tenant_id=context.tenant_id, clinic_id=clinic.id)
        return clinic

    async def update_clinic(
        self,
        identity: Identity,
        clinic_id: str,
        *,
        name: Optional[str] = None,
        address: Any = UNSET,
    ) -> Clinic:
        context = self.tenancy.load_context(identity)
        TenantResolver.ensure_tenant_owner(context)
        self._ensure_active_subscription(context)
        changes: dict[str, Any] = {}
        if name is not None:
            clean_name = name.strip()
            if not clean_name:
                raise ValidationError("clinic name is required")
            changes["name"] = clean_name
        if address is not UNSET:
            changes["address"] = (address or "").strip() or None
        if not changes:
            raise ValidationError("no changes requested")
        clinic = self.store.update_clinic(context.tenant_id, clinic_id, **changes)
        if clinic is None:
            raise NotFoundError("clinic not found")
        logger.info(
            "clinic_updated", tenant_id=context.tenant_id, clinic_id=clinic_id, fields=sorted(changes)
        )
        return clinic

    async def delete_clinic(self, identity: Identity, clinic_id: str) -> dict[str, Any]:
        """Remove a clinic; its staff, patients and invitations are left unassigned."""
        context = self.tenancy.load_context(identity)
        TenantResolver.ensure_tenant_owner(context)
        self._ensure_active_subscription(context)
        removed = self.store.delete_clinic(context.tenant_id, clinic_id)
        if removed is None:
            raise NotFoundError("clinic not found")
        logger.info("clinic_deleted", tenant_id=context.tenant_id, clinic_id=clinic_id)
        return {"id": removed.id, "deleted": True}

    # ------------------------------------------------------------ invitations

    async def create_invitation(
        self,
        identity: Identity,
        *,
        email: str,
        role: str,
        clinic_id: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> dict[str, Any]:
        context = self.tenancy.load_context(identity)
        self._ensure_active_subscription(context)
        tenant_id = context.tenant_id
        if role not in TEAM_ROLES:
            raise ValidationError("invalid role", detail={"allowed": list(TEAM_ROLES)})
        if clinic_id and self.store.get_clinic(tenant_id, clinic_id) is None:
            raise InvalidClinicError()
        TenantResolver.ensure_can_manage_staff(context, target_role=role, target_clinic_id=clinic_id)
        if role != "assistant" and not plans.plan_supports_capability(context.plan, "multiClinic"):
            raise ForbiddenError(
                "your plan only allows inviting assistants",
                detail={"plan": plans.get_plan_definition(context.plan).id},
            )

        normalized_email = email.strip().lower()
        now = self._now()
        if any(
            inv.email == normalized_email and inv.status_at(now) == "pending"
            for inv in self.store.list_invitations(tenant_id)
        ):
            raise ConflictError("a pending invitation already exists for this email")
        plans.ensure_seat_available(context.plan, self._seats_in_use(tenant_id))

        try:
            invitation = self.store.create_invitation(
                StaffInvitation(
                    id=new_id(),
                    owner_professional_id=tenant_id,
                    email=normalized_email,
                    role=role,
                    clinic_id=clinic_id or None,
                    token=secrets.token_urlsafe(32),
                    created_at=now,
                    expires_at=now + timedelta(days=self.invitation_ttl_days),
                ),
                seat_limit=plans.get_staff_seat_limit(context.plan),
            )
        except ConstraintViolation as exc:
            # A concurrent invite took the last seat or the same email first
            if exc.detail.get("reason") == "seats":
                raise PlanLimitExceededError(
                    "no staff seats left on your plan", detail=exc.detail
                ) from exc
            raise ConflictError("a pending invitation already exists for this email") from exc
        logger.info(
            "invitation_created",
            tenant_id=tenant_id,
            invitation_id=invitation.id,
            role=role,
            to=mask_email(normalized_email),
        )
        email_sent = False
        if self.email is not None:
            email_sent = await asyncio.to_thread(
                self.email.send_staff_invitation,
                normalized_email,
                invitation.token,
                inviter_name=context.owner.name,
                role=role,
                expires_days=self.invitation_ttl_days,
                locale=locale,
            )
            if not email_sent:
                # The link is still returned so the inviter can share it by hand
                logger.warning("invitation_email_failed", invitation_id=invitation.id)
        return {
            "invitation": _invitation_dict(invitation, now),
            "token": invitation.token,
            "invite_url": invitation_url(self.base_url, invitation.token),
            "email_sent": email_sent,
        }

    async def revoke_invitation(self, identity: Identity, invitation_id: str) -> dict[str, Any]:
        context = self.tenancy.load_context(identity)
        invitation = self.store.get_invitation(invitation_id)
        if invitation is None or invitation.owner_professional_id != context.tenant_id:
            raise NotFoundError("invitation not found")
        TenantResolver.ensure_can_manage_staff(
            context, target_role=invitation.role, target_clinic_id=invitation.clinic_id
        )
        revoked = self.store.revoke_invitation(invitation_id, self._now())
        if revoked is None:
            raise ConflictError("invitation was already accepted")
        logger.info("invitation_revoked", tenant_id=context.tenant_id, invitation_id=invitation_id)
        return _invitation_dict(revoked, self._now())

    # ------------------------------------------------------------------ staff

    async def update_staff_member(
        self,
        identity: Identity,
        staff_id: str,
        *,
        status: Optional[str] = None,
        reason: Optional[str] = None,
        clinic_id: Any = UNSET,
        role: Optional[str] = None,
    ) -> dict[str, Any]:
        context = self.tenancy.load_context(identity)
        tenant_id = context.tenant_id
        staff = self.store.get_user(staff_id)
        if staff is None or staff.owner_professional_id != tenant_id:
            raise NotFoundError("staff member not found")
        if staff.id == context.user.id:
            raise ForbiddenError("you cannot change your own team membership")
        TenantResolver.ensure_can_manage_staff(
            context, target_role=staff.team_role, target_clinic_id=staff.team_clinic_id
        )
        live = context.identity
        changes: dict[str, Any] = {}

        if status is not None:
            if status not in STAFF_STATUSES:
                raise ValidationError("invalid status", detail={"allowed": list(STAFF_STATUSES)})
            clean_reason = (reason or "").strip()
            if status in {"inactive", "removed"} and not clean_reason:
                raise ValidationError("a reason is required to deactivate or remove staff")
            if staff.status == "removed" and status != "removed":
                plans.ensure_seat_available(context.plan, self._seats_in_use(tenant_id))
            changes["status"] = status
            changes["status_reason"] = clean_reason or None

        if clinic_id is not UNSET:
            target = clinic_id or None
            if target is not None and self.store.get_clinic(tenant_id, target) is None:
                raise InvalidClinicError()
            if live.is_team_restricted and target != live.team_clinic_id:
                raise ForbiddenError("you can only assign staff to your own clinic")
            changes["team_clinic_id"] = target

        if role is not None and role != staff.team_role:
            if role not in TEAM_ROLES:
                raise ValidationError("invalid role", detail={"allowed": list(TEAM_ROLES)})
            if not (live.is_tenant_owner or live.is_tenant_admin):
                raise ForbiddenError("only the account administrator can change roles")
            if role != "assistant" and not plans.plan_supports_capability(context.plan, "multiClinic"):
                raise ForbiddenError("your plan only allows assistants")
            changes["team_role"] = role

        if not changes:
            raise ValidationError("no changes requested")
        updated = self.store.update_user(staff.id, **changes)
        if updated is None:
            raise NotFoundError("staff member not found")
        logger.info(
            "staff_member_updated",
            tenant_id=tenant_id,
            staff_id=staff.id,
            fields=sorted(changes),
        )
        return _staff_dict(updated)
