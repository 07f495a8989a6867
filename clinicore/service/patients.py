from __future__ import annotations

from typing import Any, Optional

from clinicore.logging import get_logger
from clinicore.service import plans
from clinicore.service.errors import ValidationError
from clinicore.service.identity import Identity
from clinicore.service.tenancy import TenantResolver
from clinicore.storage.common import CredentialStore
from clinicore.storage.models import Patient

logger = get_logger(__name__)


def patient_dict(patient: Patient) -> dict[str, Any]:
    return {
        "id": patient.id,
        "name": patient.name,
        "clinic_id": patient.clinic_id,
        "dni": patient.identifier,
        "email": patient.email,
        "created_at": patient.created_at.isoformat(),
    }


class PatientService:
    """Patient records scoped through the tenancy resolver.

    The records themselves are plain storage; every call here goes through
    clinic assignment or record access resolution first.
    """

    def __init__(self, store: CredentialStore, tenancy: TenantResolver) -> None:
        self.store = store
        self.tenancy = tenancy

    async def list_patients(
        self, identity: Identity, *, clinic_id: Optional[str] = None
    ) -> dict[str, Any]:
        assignment = self.tenancy.resolve_clinic_assignment(identity, clinic_id)
        patients = self.store.list_patients(assignment.tenant_id, assignment.clinic_id)
        return {
            "clinic_id": assignment.clinic_id,
            "substituted": assignment.substituted,
            "patients": [patient_dict(p) for p in patients],
        }

    async def create_patient(
        self,
        identity: Identity,
        *,
        name: str,
        clinic_id: Optional[str] = None,
        identifier: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Patient:
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("patient name is required")
        context = self.tenancy.load_context(identity)
        plans.ensure_subscription_active(
            context.subscription.status, context.subscription.trial_ends_at
        )
        assignment = self.tenancy.resolve_clinic_assignment(identity, clinic_id)
        existing = len(self.store.list_patients(assignment.tenant_id))
        plans.ensure_patient_capacity(context.plan, existing)
        patient = self.store.create_patient(
            assignment.tenant_id,
            clean_name,
            clinic_id=assignment.clinic_id,
            identifier=identifier,
            email=email,
        )
        logger.info(
            "patient_created",
            tenant_id=assignment.tenant_id,
            clinic_id=assignment.clinic_id,
            patient_id=patient.id,
        )
        return patient

    async def get_patient(self, identity: Identity, patient_id: str) -> Patient:
        return self.tenancy.resolve_record_access(identity, patient_id).patient
