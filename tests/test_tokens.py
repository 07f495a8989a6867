"""Unit tests for session and purpose tokens."""

import json

import pytest

from clinicore.service.errors import InvalidTokenError
from clinicore.service.identity import Identity
from clinicore.service.tokens import TokenService

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture
def tokens():
    return TokenService(SECRET, issuer="clinicore", audience="clinicore-clients")


@pytest.fixture
def staff_identity():
    return Identity(
        id="user-1",
        identifier="30111222",
        account_type="professional",
        name="Ana Ruiz",
        email="ana@example.com",
        owner_professional_id="owner-1",
        team_role="assistant",
        team_clinic_id="clinic-1",
        subscription_plan="pro",
    )


class TestSessionTokens:
    def test_session_token_round_trips_identity(self, tokens, staff_identity):
        token = tokens.issue_session_token(staff_identity)
        restored = tokens.verify_session_token(token)

        assert restored.id == staff_identity.id
        assert restored.identifier == staff_identity.identifier
        assert restored.account_type == staff_identity.account_type
        assert restored.owner_professional_id == "owner-1"
        assert restored.team_role == "assistant"
        assert restored.team_clinic_id == "clinic-1"
        assert restored.subscription_plan == "pro"
        assert restored.token_id

    def test_each_token_gets_unique_id(self, tokens, staff_identity):
        first = tokens.verify_session_token(tokens.issue_session_token(staff_identity))
        second = tokens.verify_session_token(tokens.issue_session_token(staff_identity))
        assert first.token_id != second.token_id

    def test_tampered_payload_rejected(self, tokens, staff_identity):
        header, payload, signature = tokens.issue_session_token(staff_identity).split(".")
        claims = json.loads(TokenService._decode_segment(payload))
        claims["team_role"] = "admin"
        forged_payload = TokenService._encode_segment(json.dumps(claims).encode())

        with pytest.raises(InvalidTokenError):
            tokens.verify_session_token(f"{header}.{forged_payload}.{signature}")

    def test_other_secret_rejected(self, tokens, staff_identity):
        other = TokenService("a-completely-different-secret")
        with pytest.raises(InvalidTokenError):
            other.verify_session_token(tokens.issue_session_token(staff_identity))

    def test_other_issuer_rejected(self, tokens, staff_identity):
        other = TokenService(SECRET, issuer="someone-else", audience="clinicore-clients")
        with pytest.raises(InvalidTokenError):
            tokens.verify_session_token(other.issue_session_token(staff_identity))

    def test_other_audience_rejected(self, tokens, staff_identity):
        other = TokenService(SECRET, issuer="clinicore", audience="another-app")
        with pytest.raises(InvalidTokenError):
            tokens.verify_session_token(other.issue_session_token(staff_identity))

    def test_expired_token_rejected(self, staff_identity):
        short_lived = TokenService(SECRET, session_ttl_minutes=0, clock_skew_seconds=0)
        token = short_lived.issue_session_token(staff_identity)
        with pytest.raises(InvalidTokenError):
            short_lived.verify_session_token(token)

    def test_unsigned_algorithm_rejected(self, tokens, staff_identity):
        _, payload, _ = tokens.issue_session_token(staff_identity).split(".")
        header = TokenService._encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        with pytest.raises(InvalidTokenError):
            tokens.verify_session_token(f"{header}.{payload}.")

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b", "a.b.c.d"])
    def test_malformed_tokens_rejected(self, tokens, garbage):
        with pytest.raises(InvalidTokenError):
            tokens.verify_session_token(garbage)

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            TokenService("")


class TestPurposeTokens:
    def test_purpose_token_carries_payload(self, tokens):
        token = tokens.issue_purpose_token({"user_id": "u-1", "redirect": "/settings"}, "oauth:gemini")
        payload = tokens.verify_purpose_token(token, "oauth:gemini")

        assert payload == {"user_id": "u-1", "redirect": "/settings"}

    def test_wrong_purpose_rejected(self, tokens):
        token = tokens.issue_purpose_token({"user_id": "u-1"}, "oauth:gemini")
        with pytest.raises(InvalidTokenError):
            tokens.verify_purpose_token(token, "oauth:google_calendar")

    def test_purpose_token_is_not_a_session(self, tokens):
        token = tokens.issue_purpose_token(
            {"sub": "u-1", "dni": "30111222", "account_type": "professional"}, "oauth:gemini"
        )
        with pytest.raises(InvalidTokenError):
            tokens.verify_session_token(token)

    def test_session_token_is_not_a_purpose_token(self, tokens, staff_identity):
        token = tokens.issue_session_token(staff_identity)
        with pytest.raises(InvalidTokenError):
            tokens.verify_purpose_token(token, "oauth:gemini")

    def test_reserved_claims_refused(self, tokens):
        with pytest.raises(ValueError):
            tokens.issue_purpose_token({"exp": 1}, "oauth:gemini")

    def test_remaining_seconds_tracks_expiry(self, tokens):
        token = tokens.issue_purpose_token({"user_id": "u-1"}, "oauth:gemini", ttl_seconds=120)
        payload = tokens.verify(token)
        assert 100 <= tokens.remaining_seconds(payload) <= 120
        assert tokens.remaining_seconds({}) == 0
