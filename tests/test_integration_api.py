"""End-to-end HTTP flows against the FastAPI app.

Covers registration, the password plus emailed code login, session cookies
and bearer tokens, team invitations, clinic-scoped patients, encryption keys
and the integration gate.
"""

import pytest
from fastapi.testclient import TestClient

from clinicore import app as app_module
from clinicore.service.auth import LOGIN_TOKEN_PURPOSE
from clinicore.service.runtime import get_runtime

PASSWORD = "Sup3r-Secret!"


class FakeDenylistCache:
    def __init__(self):
        self.denied = set()

    async def denylist_session_token(self, jti, ttl_seconds):
        self.denied.add(jti)

    async def is_session_token_denylisted(self, jti):
        return jti in self.denied


@pytest.fixture
def client(fixed_two_factor_code):
    return TestClient(app_module.app)


def register(client, dni="30.111.222", email="ana@example.com", name="Dra. Ana Ruiz"):
    return client.post(
        "/v1/auth/register",
        json={"dni": dni, "name": name, "email": email, "password": PASSWORD},
    )


def start_login(client, dni="30111222", password=PASSWORD):
    login = client.post("/v1/auth/login", json={"dni": dni, "password": password})
    assert login.status_code == 200, login.text
    return login.json()["data"]["login_token"]


def verify(client, login_token, dni="30111222", code="123456"):
    return client.post(
        "/v1/auth/2fa/verify", json={"dni": dni, "code": code, "login_token": login_token}
    )


def sign_in(client, dni="30111222", password=PASSWORD, code="123456"):
    verified = verify(client, start_login(client, dni, password), dni, code)
    assert verified.status_code == 200, verified.text
    client.cookies.clear()
    return verified.json()["data"]["token"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_starts_trial(self, client):
        response = register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["dni"] == "30111222"
        assert body["data"]["subscription_plan"] == "starter"
        assert body["data"]["subscription_status"] == "trialing"
        assert "password_hash" not in body["data"]
        assert "token" not in client.cookies

    def test_duplicate_identifier_conflicts(self, client):
        register(client)
        response = register(client, email="other@example.com")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_invalid_payload_uses_error_envelope(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"dni": "30111222", "name": "Ana", "email": "not-an-email", "password": PASSWORD},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert [d["field"] for d in body["error"]["details"]] == ["email"]

    def test_short_password_rejected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"dni": "30111222", "name": "Ana", "email": "ana@example.com", "password": "short"},
        )
        assert response.status_code == 400


class TestLogin:
    def test_full_login_sets_cookie(self, client):
        register(client)

        login = client.post("/v1/auth/login", json={"dni": "30111222", "password": PASSWORD, "locale": "en"})
        assert login.status_code == 200
        data = login.json()["data"]
        assert data["requires_two_factor"] is True
        assert data["expires_in_minutes"] == 5

        verified = verify(client, data["login_token"])
        assert verified.status_code == 200
        data = verified.json()["data"]
        assert data["token_type"] == "bearer"
        assert client.cookies.get("token") == data["token"]

        me = client.get("/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["data"]["tenant_id"] == data["user"]["id"]

    def test_wrong_password_and_unknown_account_look_alike(self, client):
        register(client)
        wrong = client.post("/v1/auth/login", json={"dni": "30111222", "password": "nope-nope"})
        unknown = client.post("/v1/auth/login", json={"dni": "99999999", "password": PASSWORD})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    def test_disabled_account_is_forbidden(self, client):
        user_id = register(client).json()["data"]["id"]
        get_runtime().store.update_user(user_id, status="inactive", status_reason="billing")

        response = client.post("/v1/auth/login", json={"dni": "30111222", "password": PASSWORD})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_wrong_then_reused_code(self, client):
        register(client)
        login_token = start_login(client)

        wrong = verify(client, login_token, code="000000")
        good = verify(client, login_token)
        reused = verify(client, login_token)

        assert wrong.status_code == 400
        assert wrong.json()["error"]["details"] == {"reason": "invalid_code"}
        assert good.status_code == 200
        assert reused.status_code == 400
        assert reused.json()["error"]["code"] == "already_used"

    def test_repeated_wrong_codes_rate_limited(self, client):
        register(client)
        login_token = start_login(client)

        statuses = [verify(client, login_token, code="000000").status_code for _ in range(5)]
        after = verify(client, login_token)

        assert statuses == [400, 400, 400, 400, 429]
        assert after.status_code == 429
        assert after.json()["error"]["code"] == "rate_limited"

    def test_code_without_request(self, client):
        user_id = register(client).json()["data"]["id"]
        login_token = get_runtime().tokens.issue_purpose_token({"user_id": user_id}, LOGIN_TOKEN_PURPOSE)
        response = verify(client, login_token)
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"reason": "not_requested"}

    def test_verify_needs_login_token(self, client):
        register(client)
        start_login(client)

        missing = client.post("/v1/auth/2fa/verify", json={"dni": "30111222", "code": "123456"})
        forged = verify(client, "x" * 40)

        assert missing.status_code == 400
        assert forged.status_code == 401

    def test_codes_without_password_step_never_lock_out(self, client):
        register(client)
        register(client, dni="30222333", email="otro@example.com")
        intruder_token = start_login(client, dni="30222333")
        login_token = start_login(client)

        statuses = {verify(client, intruder_token, code="000000").status_code for _ in range(6)}

        assert statuses == {401}
        assert verify(client, login_token).status_code == 200

    def test_resend_requires_password(self, client):
        register(client)
        bad = client.post("/v1/auth/2fa/send", json={"dni": "30111222", "password": "wrong-pass"})
        good = client.post("/v1/auth/2fa/send", json={"dni": "30111222", "password": PASSWORD})
        assert bad.status_code == 401
        assert good.status_code == 200

    def test_malformed_code_rejected(self, client):
        response = verify(client, "x" * 40, code="12ab56")
        assert response.status_code == 400


class TestSessions:
    def test_anonymous_request_is_unauthorized(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_bearer_token_works_without_cookie(self, client):
        register(client)
        token = sign_in(client)
        assert client.get("/v1/auth/me", headers=bearer(token)).status_code == 200

    def test_logout_revokes_token(self, client):
        register(client)
        token = sign_in(client)
        get_runtime().sessions.cache = FakeDenylistCache()

        response = client.post("/v1/auth/logout", headers=bearer(token))

        assert response.status_code == 200
        assert client.get("/v1/auth/me", headers=bearer(token)).status_code == 401

    def test_logout_clears_cookie(self, client):
        register(client)
        verify(client, start_login(client))
        assert client.cookies.get("token")

        client.post("/v1/auth/logout")

        assert not client.cookies.get("token")
        assert client.get("/v1/auth/me").status_code == 401


class TestTeamFlow:
    def _owner_with_clinic(self, client):
        register(client)
        owner = sign_in(client)
        clinic = client.post("/v1/team/clinics", json={"name": "Centro"}, headers=bearer(owner))
        assert clinic.status_code == 201
        return owner, clinic.json()["data"]["id"]

    def _invite_and_accept(self, client, owner, clinic_id, dni="30222333"):
        invite = client.post(
            "/v1/team/invitations",
            json={"email": "asistente@example.com", "role": "assistant", "clinic_id": clinic_id},
            headers=bearer(owner),
        )
        assert invite.status_code == 201, invite.text
        token = invite.json()["data"]["token"]
        accepted = client.post(
            "/v1/auth/invitations",
            json={"token": token, "dni": dni, "name": "Asistente", "password": PASSWORD},
        )
        assert accepted.status_code == 201, accepted.text
        return token, accepted.json()["data"]

    def test_starter_second_clinic_is_limited(self, client):
        owner, _ = self._owner_with_clinic(client)
        response = client.post("/v1/team/clinics", json={"name": "Sur"}, headers=bearer(owner))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "limit_exceeded"

    def test_owner_edits_and_deletes_clinic(self, client):
        owner, clinic_id = self._owner_with_clinic(client)
        _, accepted = self._invite_and_accept(client, owner, clinic_id)

        renamed = client.patch(
            f"/v1/team/clinics/{clinic_id}", json={"name": "Centro II"}, headers=bearer(owner)
        )
        empty = client.patch(f"/v1/team/clinics/{clinic_id}", json={}, headers=bearer(owner))
        deleted = client.delete(f"/v1/team/clinics/{clinic_id}", headers=bearer(owner))
        missing = client.delete(f"/v1/team/clinics/{clinic_id}", headers=bearer(owner))

        assert renamed.status_code == 200
        assert renamed.json()["data"]["name"] == "Centro II"
        assert empty.status_code == 400
        assert deleted.json()["data"] == {"id": clinic_id, "deleted": True}
        assert missing.status_code == 404
        staff = client.get("/v1/team", headers=bearer(owner)).json()["data"]["staff"]
        assert [s["clinic_id"] for s in staff if s["id"] == accepted["staff"]["id"]] == [None]

    def test_invitation_lifecycle(self, client):
        owner, clinic_id = self._owner_with_clinic(client)
        invite = client.post(
            "/v1/team/invitations",
            json={"email": "asistente@example.com", "role": "assistant", "clinic_id": clinic_id},
            headers=bearer(owner),
        )
        token = invite.json()["data"]["token"]

        details = client.get("/v1/auth/invitations", params={"token": token})
        assert details.status_code == 200
        assert details.json()["data"]["clinic_name"] == "Centro"

        accepted = client.post(
            "/v1/auth/invitations",
            json={"token": token, "dni": "30222333", "name": "Asistente", "password": PASSWORD},
        )
        assert accepted.status_code == 201
        assert accepted.json()["data"]["staff"]["clinic_id"] == clinic_id
        assert "token" not in client.cookies

        again = client.post(
            "/v1/auth/invitations",
            json={"token": token, "dni": "30222444", "name": "Otra", "password": PASSWORD},
        )
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "already_used"

    def test_starter_cannot_invite_professionals(self, client):
        owner, _ = self._owner_with_clinic(client)
        response = client.post(
            "/v1/team/invitations",
            json={"email": "doc@example.com", "role": "professional"},
            headers=bearer(owner),
        )
        assert response.status_code == 403

    def test_revoked_invitation_cannot_be_accepted(self, client):
        owner, clinic_id = self._owner_with_clinic(client)
        invite = client.post(
            "/v1/team/invitations",
            json={"email": "asistente@example.com", "role": "assistant", "clinic_id": clinic_id},
            headers=bearer(owner),
        ).json()["data"]

        revoked = client.delete(
            f"/v1/team/invitations/{invite['invitation']['id']}", headers=bearer(owner)
        )
        accepted = client.post(
            "/v1/auth/invitations",
            json={"token": invite["token"], "dni": "30222333", "name": "A", "password": PASSWORD},
        )

        assert revoked.json()["data"]["status"] == "revoked"
        assert accepted.status_code == 400

    def test_assistant_patients_stay_in_assigned_clinic(self, client):
        owner, clinic_id = self._owner_with_clinic(client)
        self._invite_and_accept(client, owner, clinic_id)
        assistant = sign_in(client, dni="30222333")

        created = client.post(
            "/v1/patients",
            json={"name": "Juan Perez", "clinic_id": "someone-elses-clinic"},
            headers=bearer(assistant),
        )
        listing = client.get("/v1/patients", headers=bearer(assistant))

        assert created.status_code == 201
        assert created.json()["data"]["clinic_id"] == clinic_id
        assert listing.json()["data"]["clinic_id"] == clinic_id
        patient_id = created.json()["data"]["id"]
        assert client.get(f"/v1/patients/{patient_id}", headers=bearer(owner)).status_code == 200
        assert client.get("/v1/patients/missing", headers=bearer(owner)).status_code == 404

    def test_deactivated_staff_loses_access(self, client):
        owner, clinic_id = self._owner_with_clinic(client)
        _, accepted = self._invite_and_accept(client, owner, clinic_id)
        assistant = sign_in(client, dni="30222333")

        update = client.patch(
            f"/v1/team/staff/{accepted['staff']['id']}",
            json={"status": "inactive", "reason": "licencia"},
            headers=bearer(owner),
        )

        assert update.status_code == 200
        assert update.json()["data"]["clinic_id"] == clinic_id
        assert client.get("/v1/team", headers=bearer(assistant)).status_code == 403

    def test_explicit_null_clears_clinic(self, client):
        owner, clinic_id = self._owner_with_clinic(client)
        _, accepted = self._invite_and_accept(client, owner, clinic_id)

        update = client.patch(
            f"/v1/team/staff/{accepted['staff']['id']}",
            json={"clinic_id": None},
            headers=bearer(owner),
        )

        assert update.status_code == 200
        assert update.json()["data"]["clinic_id"] is None

    def test_encryption_key_endpoints(self, client):
        owner, clinic_id = self._owner_with_clinic(client)
        self._invite_and_accept(client, owner, clinic_id)
        assistant = sign_in(client, dni="30222333")

        first = client.get("/v1/professionals/encryption/key", headers=bearer(owner))
        rotated = client.post("/v1/professionals/encryption/key", headers=bearer(owner))

        assert first.json()["data"]["version"] == 1
        assert rotated.json()["data"]["version"] == 2
        assert rotated.json()["data"]["retained_versions"] == [1]
        denied = client.get("/v1/professionals/encryption/key", headers=bearer(assistant))
        assert denied.status_code == 403


class TestIntegrations:
    def test_starter_owner_cannot_connect_gemini(self, client):
        register(client)
        owner = sign_in(client)
        response = client.get("/v1/integrations/gemini/authorize", headers=bearer(owner))
        assert response.status_code == 403

    def test_calendar_round_trip(self, client):
        register(client)
        owner = sign_in(client)

        start = client.get(
            "/v1/integrations/google_calendar/authorize",
            params={"redirect": "/agenda"},
            headers=bearer(owner),
        )
        assert start.status_code == 200
        data = start.json()["data"]
        assert data["provider"] == "google_calendar"
        assert "calendar-test-client" in data["authorization_url"]

        callback = client.get(
            "/v1/integrations/google_calendar/callback",
            params={"code": "provider-code", "state": data["state"]},
        )
        assert callback.status_code == 200
        assert callback.json()["data"]["redirect"] == "/agenda"

    def test_gemini_key_lifecycle(self, client):
        owner_id = register(client).json()["data"]["id"]
        owner = sign_in(client)

        denied = client.post(
            "/v1/integrations/gemini/key", json={"api_key": "AIza-secret"}, headers=bearer(owner)
        )
        assert denied.status_code == 403

        get_runtime().store.update_user(owner_id, subscription_plan="pro", subscription_status="active")
        stored = client.post(
            "/v1/integrations/gemini/key",
            json={"api_key": "AIza-secret", "label": "Consultorio"},
            headers=bearer(owner),
        )
        status = client.get("/v1/integrations/gemini/status", headers=bearer(owner))
        removed = client.delete("/v1/integrations/gemini", headers=bearer(owner))

        assert stored.status_code == 200
        assert "AIza-secret" not in stored.text
        assert status.json()["data"]["connected"] is True
        assert status.json()["data"]["label"] == "Consultorio"
        assert removed.json()["data"]["removed"] is True
        after = client.get("/v1/integrations/gemini/status", headers=bearer(owner))
        assert after.json()["data"]["connected"] is False

    def test_blank_api_key_rejected(self, client):
        register(client)
        owner = sign_in(client)
        response = client.post(
            "/v1/integrations/gemini/key", json={"api_key": "   "}, headers=bearer(owner)
        )
        assert response.status_code == 400

    def test_callback_with_forged_state(self, client):
        response = client.get(
            "/v1/integrations/google_calendar/callback",
            params={"code": "provider-code", "state": "forged"},
        )
        assert response.status_code == 401


class TestPlumbing:
    def test_request_id_echoed_in_header_and_envelope(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-abc-123"})
        assert response.headers["X-Request-ID"] == "req-abc-123"
        assert response.json()["request_id"] == "req-abc-123"

    def test_security_headers(self, client):
        response = client.get("/v1/auth/me")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert body["checks"]["store"]["persistent"] is False

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/nothing-here")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
