from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from clinicore.api.schemas import (
    ApiKeyRequest,
    ClinicCreateRequest,
    ClinicUpdateRequest,
    Envelope,
    InvitationAcceptRequest,
    InvitationCreateRequest,
    KeyStatusResponse,
    LoginRequest,
    LoginResponse,
    OAuthStartResponse,
    PatientCreateRequest,
    RegisterRequest,
    SessionResponse,
    StaffUpdateRequest,
    TwoFactorVerifyRequest,
)
from clinicore.service.auth import public_user
from clinicore.service.errors import AuthenticationError
from clinicore.service.identity import Identity
from clinicore.service.patients import patient_dict
from clinicore.service.runtime import get_runtime
from clinicore.service.sessions import SESSION_COOKIE_NAME
from clinicore.service.team import UNSET, clinic_dict
from clinicore.service.tenancy import TenantResolver

router = APIRouter(prefix="/v1")


async def get_user(request: Request) -> Identity:
    """Resolve the caller from the bearer header or the session cookie."""
    runtime = get_runtime()
    identity = await runtime.sessions.resolve(request.headers, request.cookies)
    if identity is None:
        raise AuthenticationError("authentication required")
    return identity


def _apply_session_cookie(response: Response, token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.session_token_ttl_minutes * 60,
        path="/",
    )


# ------------------------------------------------------------------------ auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an owning professional account on a starter trial.

    No session is issued; the new account signs in through the two-factor flow.
    """
    runtime = get_runtime()
    user = await runtime.auth.register_professional(
        identifier=body.dni, name=body.name, email=body.email, password=body.password
    )
    return Envelope(status="ok", data=public_user(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Check the password and email a one-time code.

    Raises:
        401: invalid credentials
        403: account disabled
        400: no email on file
        500: the code could not be delivered
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        identifier=body.dni, password=body.password, account_type=body.type, locale=body.locale
    )
    return Envelope(status="ok", data=LoginResponse(**result))


@router.post("/auth/2fa/send", response_model=Envelope, tags=["auth"])
async def resend_two_factor(body: LoginRequest):
    runtime = get_runtime()
    result = await runtime.auth.login(
        identifier=body.dni, password=body.password, account_type=body.type, locale=body.locale
    )
    return Envelope(status="ok", data=LoginResponse(**result))


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: TwoFactorVerifyRequest, response: Response):
    """Exchange a valid one-time code for a session token and cookie."""
    runtime = get_runtime()
    user, token = await runtime.auth.verify_two_factor(
        identifier=body.dni, code=body.code, login_token=body.login_token, account_type=body.type
    )
    _apply_session_cookie(response, token)
    return Envelope(status="ok", data=SessionResponse(token=token, user=public_user(user)))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(identity: Identity = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.auth.me(identity))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    token = runtime.sessions.token_from_request(request.headers, request.cookies)
    await runtime.auth.logout(token)
    response.delete_cookie(
        SESSION_COOKIE_NAME, path="/", secure=runtime.settings.cookie_secure, samesite="lax"
    )
    return Envelope(status="ok", data={"message": "signed out"})


@router.get("/auth/invitations", response_model=Envelope, tags=["auth"])
async def get_invitation(token: str = Query(..., min_length=16, max_length=256)):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.auth.get_invitation_details(token))


@router.post("/auth/invitations", response_model=Envelope, status_code=201, tags=["auth"])
async def accept_invitation(body: InvitationAcceptRequest):
    runtime = get_runtime()
    result = await runtime.auth.accept_invitation(
        token=body.token, identifier=body.dni, name=body.name, password=body.password
    )
    return Envelope(status="ok", data=result)


# ------------------------------------------------------------------------ team


@router.get("/team", response_model=Envelope, tags=["team"])
async def team_overview(identity: Identity = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.team.overview(identity))


@router.post("/team/clinics", response_model=Envelope, status_code=201, tags=["team"])
async def create_clinic(body: ClinicCreateRequest, identity: Identity = Depends(get_user)):
    runtime = get_runtime()
    clinic = await runtime.team.create_clinic(identity, name=body.name, address=body.address)
    return Envelope(status="ok", data=clinic_dict(clinic))


@router.patch("/team/clinics/{clinic_id}", response_model=Envelope, tags=["team"])
async def update_clinic(
    body: ClinicUpdateRequest,
    clinic_id: str = Path(..., max_length=64),
    identity: Identity = Depends(get_user),
):
    runtime = get_runtime()
    address = body.address if "address" in body.model_fields_set else UNSET
    clinic = await runtime.team.update_clinic(identity, clinic_id, name=body.name, address=address)
    return Envelope(status="ok", data=clinic_dict(clinic))


@router.delete("/team/clinics/{clinic_id}", response_model=Envelope, tags=["team"])
async def delete_clinic(
    clinic_id: str = Path(..., max_length=64),
    identity: Identity = Depends(get_user),
):
    """Delete a clinic; staff and patients assigned to it become unassigned."""
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.team.delete_clinic(identity, clinic_id))


@router.post("/team/invitations", response_model=Envelope, status_code=201, tags=["team"])
async def create_invitation(body: InvitationCreateRequest, identity: Identity = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.team.create_invitation(
        identity,
        email=body.email,
        role=body.role,
        clinic_id=body.clinic_id,
        locale=body.locale,
    )
    return Envelope(status="ok", data=result)


@router.delete("/team/invitations/{invitation_id}", response_model=Envelope, tags=["team"])
async def revoke_invitation(
    invitation_id: str = Path(..., max_length=64),
    identity: Identity = Depends(get_user),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.team.revoke_invitation(identity, invitation_id))


@router.patch("/team/staff/{staff_id}", response_model=Envelope, tags=["team"])
async def update_staff_member(
    body: StaffUpdateRequest,
    staff_id: str = Path(..., max_length=64),
    identity: Identity = Depends(get_user),
):
    runtime = get_runtime()
    # An omitted clinic_id leaves the assignment alone; an explicit null clears it
    clinic_id = body.clinic_id if "clinic_id" in body.model_fields_set else UNSET
    result = await runtime.team.update_staff_member(
        identity,
        staff_id,
        status=body.status,
        reason=body.reason,
        clinic_id=clinic_id,
        role=body.role,
    )
    return Envelope(status="ok", data=result)


# -------------------------------------------------------------------- patients


@router.get("/patients", response_model=Envelope, tags=["patients"])
async def list_patients(
    clinic_id: Optional[str] = Query(None, max_length=64),
    identity: Identity = Depends(get_user),
):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=await runtime.patients.list_patients(identity, clinic_id=clinic_id)
    )


@router.post("/patients", response_model=Envelope, status_code=201, tags=["patients"])
async def create_patient(body: PatientCreateRequest, identity: Identity = Depends(get_user)):
    runtime = get_runtime()
    patient = await runtime.patients.create_patient(
        identity,
        name=body.name,
        clinic_id=body.clinic_id,
        identifier=body.dni,
        email=body.email,
    )
    return Envelope(status="ok", data=patient_dict(patient))


@router.get("/patients/{patient_id}", response_model=Envelope, tags=["patients"])
async def get_patient(
    patient_id: str = Path(..., max_length=64),
    identity: Identity = Depends(get_user),
):
    runtime = get_runtime()
    patient = await runtime.patients.get_patient(identity, patient_id)
    return Envelope(status="ok", data=patient_dict(patient))


# ------------------------------------------------------------------ encryption


@router.get("/professionals/encryption/key", response_model=Envelope, tags=["encryption"])
async def get_encryption_key(identity: Identity = Depends(get_user)):
    """Return the tenant's current key version, creating the first key if needed."""
    runtime = get_runtime()
    context = runtime.tenancy.load_context(identity)
    TenantResolver.ensure_tenant_admin(context)
    status = runtime.keys.ensure_key(context.tenant_id)
    return Envelope(status="ok", data=KeyStatusResponse(**status.to_dict()))


@router.post("/professionals/encryption/key", response_model=Envelope, tags=["encryption"])
async def rotate_encryption_key(identity: Identity = Depends(get_user)):
    runtime = get_runtime()
    context = runtime.tenancy.load_context(identity)
    TenantResolver.ensure_tenant_owner(context)
    status = runtime.keys.rotate_key(context.tenant_id)
    return Envelope(status="ok", data=KeyStatusResponse(**status.to_dict()))


# ---------------------------------------------------------------- integrations


@router.get(
    "/integrations/{provider}/authorize", response_model=Envelope, tags=["integrations"]
)
async def authorize_integration(
    provider: str = Path(..., max_length=32),
    redirect: Optional[str] = Query(None, max_length=512),
    identity: Identity = Depends(get_user),
):
    """Gate the provider for the caller's plan and role, then return the consent URL."""
    runtime = get_runtime()
    start = await runtime.integrations.authorize(identity, provider, redirect=redirect)
    return Envelope(
        status="ok",
        data=OAuthStartResponse(
            authorization_url=start["authorization_url"],
            state=start["state"],
            provider=provider,
        ),
    )


@router.get(
    "/integrations/{provider}/callback", response_model=Envelope, tags=["integrations"]
)
async def integration_callback(
    provider: str = Path(..., max_length=32),
    code: str = Query(..., max_length=2048),
    state: str = Query(..., max_length=4096),
):
    runtime = get_runtime()
    result = await runtime.integrations.complete(provider, code=code, state=state)
    return Envelope(status="ok", data=result)


@router.get("/integrations/{provider}/status", response_model=Envelope, tags=["integrations"])
async def integration_status(
    provider: str = Path(..., max_length=32),
    identity: Identity = Depends(get_user),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.integrations.status(identity, provider))


@router.post("/integrations/{provider}/key", response_model=Envelope, tags=["integrations"])
async def store_integration_key(
    body: ApiKeyRequest,
    provider: str = Path(..., max_length=32),
    identity: Identity = Depends(get_user),
):
    """Store a provider API key sealed with the tenant encryption key.

    Raises:
        403: caller is not the owner, or the plan lacks AI features
        400: the provider does not take API keys
    """
    runtime = get_runtime()
    result = await runtime.integrations.store_api_key(
        identity, provider, api_key=body.api_key, label=body.label
    )
    return Envelope(status="ok", data=result)


@router.delete("/integrations/{provider}", response_model=Envelope, tags=["integrations"])
async def disconnect_integration(
    provider: str = Path(..., max_length=32),
    identity: Identity = Depends(get_user),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.integrations.disconnect(identity, provider))
