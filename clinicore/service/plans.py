from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from clinicore.service.errors import ForbiddenError, PlanLimitExceededError

DEFAULT_PLAN = "starter"
TRIAL_DAYS = 30

# Subscription states that block gated writes until billing is resolved
LOCKED_SUBSCRIPTION_STATUSES = frozenset({"trial_expired", "past_due", "cancelled"})

CAPABILITIES = frozenset(
    {"aiInsights", "marketingAutomation", "whatsappInbox", "multiClinic", "patientLimit", "staffSeats"}
)


@dataclass(frozen=True)
class PlanDefinition:
    id: str
    name: str
    # None means unbounded
    clinic_limit: Optional[int]
    staff_seats: Optional[int]
    patient_limit: Optional[int]
    storage_gb: int
    features: frozenset[str] = field(default_factory=frozenset)


PLAN_DEFINITIONS: dict[str, PlanDefinition] = {
    "starter": PlanDefinition(
        id="starter",
        name="Starter",
        clinic_limit=1,
        staff_seats=3,
        patient_limit=200,
        storage_gb=25,
    ),
    "pro": PlanDefinition(
        id="pro",
        name="Pro",
        clinic_limit=2,
        staff_seats=None,
        patient_limit=None,
        storage_gb=200,
        features=frozenset({"aiInsights", "marketingAutomation", "whatsappInbox", "multiClinic"}),
    ),
}


def get_plan_definition(plan: Optional[str]) -> PlanDefinition:
    """Unknown or missing plans fall back to the starter tier."""
    return PLAN_DEFINITIONS.get((plan or "").strip().lower(), PLAN_DEFINITIONS[DEFAULT_PLAN])


def plan_supports_capability(plan: Optional[str], capability: str) -> bool:
    if capability not in CAPABILITIES:
        raise ValueError(f"unknown capability: {capability}")
    definition = get_plan_definition(plan)
    if capability == "patientLimit":
        return definition.patient_limit is None
    if capability == "staffSeats":
        return definition.staff_seats is None
    return capability in definition.features


def get_clinic_limit(plan: Optional[str]) -> Optional[int]:
    return get_plan_definition(plan).clinic_limit


def get_staff_seat_limit(plan: Optional[str]) -> Optional[int]:
    """Seat count including the owning professional."""
    return get_plan_definition(plan).staff_seats


def get_patient_limit(plan: Optional[str]) -> Optional[int]:
    return get_plan_definition(plan).patient_limit


def remaining_staff_seats(plan: Optional[str], current_staff_count: int) -> Optional[int]:
    limit = get_staff_seat_limit(plan)
    if limit is None:
        return None
    return max(0, limit - 1 - current_staff_count)


# ----------------------------------------------------------------- gates


def ensure_can_create_clinic(plan: Optional[str], existing_clinics: int) -> None:
    """The first clinic is allowed on any plan; more need ``multiClinic``."""
    limit = get_clinic_limit(plan)
    if limit is not None and existing_clinics >= limit:
        raise PlanLimitExceededError(
            "clinic limit reached for your plan",
            detail={"limit": limit, "existing": existing_clinics},
        )
    if existing_clinics >= 1 and not plan_supports_capability(plan, "multiClinic"):
        raise ForbiddenError(
            "multiple clinics require the pro plan",
            detail={"capability": "multiClinic", "plan": get_plan_definition(plan).id},
        )


def ensure_seat_available(plan: Optional[str], current_staff_count: int) -> None:
    """``current_staff_count`` includes pending invitations, never the owner."""
    remaining = remaining_staff_seats(plan, current_staff_count)
    if remaining is not None and remaining <= 0:
        raise PlanLimitExceededError(
            "no staff seats left on your plan",
            detail={"limit": get_staff_seat_limit(plan), "used": current_staff_count + 1},
        )


def ensure_patient_capacity(plan: Optional[str], current_patients: int) -> None:
    limit = get_patient_limit(plan)
    if limit is not None and current_patients >= limit:
        raise PlanLimitExceededError(
            "patient limit reached for your plan",
            detail={"limit": limit, "existing": current_patients},
        )


def ensure_ai_configurable(plan: Optional[str], *, is_tenant_owner: bool) -> None:
    if not is_tenant_owner:
        raise ForbiddenError("only the account owner can configure AI integrations")
    if not plan_supports_capability(plan, "aiInsights"):
        raise ForbiddenError(
            "AI insights require the pro plan",
            detail={"capability": "aiInsights", "plan": get_plan_definition(plan).id},
        )


# ---------------------------------------------------------- subscription


def trial_end_for(start: datetime) -> datetime:
    return start + timedelta(days=TRIAL_DAYS)


def is_subscription_locked(
    status: Optional[str], trial_ends_at: Optional[datetime], *, now: Optional[datetime] = None
) -> bool:
    if status in LOCKED_SUBSCRIPTION_STATUSES:
        return True
    if status == "trialing" and trial_ends_at is not None:
        current = now or datetime.now(timezone.utc)
        return trial_ends_at <= current
    return False


def ensure_subscription_active(
    status: Optional[str], trial_ends_at: Optional[datetime], *, now: Optional[datetime] = None
) -> None:
    if is_subscription_locked(status, trial_ends_at, now=now):
        raise ForbiddenError(
            "subscription inactive; update billing to continue",
            detail={"subscription_status": status},
        )
