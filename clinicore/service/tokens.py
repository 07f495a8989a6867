from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Optional

from clinicore.logging import get_logger
from clinicore.service.errors import InvalidTokenError
from clinicore.service.identity import IDENTITY_CLAIMS, Identity

logger = get_logger(__name__)

SESSION_TOKEN_TYPE = "session"
PURPOSE_TOKEN_TYPE = "purpose"


class TokenService:
    """HS256 session and purpose tokens signed with an injected secret.

    Verification failures all raise the same ``InvalidTokenError`` so callers
    cannot tell a forged token from an expired one.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "clinicore",
        audience: str = "clinicore-clients",
        session_ttl_minutes: int = 24 * 60,
        purpose_ttl_minutes: int = 10,
        clock_skew_seconds: int = 30,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.session_ttl_seconds = session_ttl_minutes * 60
        self.purpose_ttl_seconds = purpose_ttl_minutes * 60
        self._clock_skew_seconds = clock_skew_seconds

    # -------------------------------------------------------------- issuing

    def issue_session_token(self, identity: Identity) -> str:
        now = int(time.time())
        payload = {
            **identity.to_claims(),
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + self.session_ttl_seconds,
            "jti": str(uuid.uuid4()),
            "token_type": SESSION_TOKEN_TYPE,
        }
        return self._encode_jwt(payload)

    def issue_purpose_token(
        self, payload: dict[str, Any], purpose: str, *, ttl_seconds: Optional[int] = None
    ) -> str:
        """Sign small structured state to carry across a redirect."""
        reserved = {"iss", "aud", "iat", "exp", "jti", "token_type", "purpose"} & set(payload)
        if reserved:
            raise ValueError(f"payload uses reserved claims: {sorted(reserved)}")
        now = int(time.time())
        body = {
            **payload,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + (ttl_seconds if ttl_seconds is not None else self.purpose_ttl_seconds),
            "jti": str(uuid.uuid4()),
            "token_type": PURPOSE_TOKEN_TYPE,
            "purpose": purpose,
        }
        return self._encode_jwt(body)

    # ------------------------------------------------------------ verifying

    def verify(
        self,
        token: str,
        *,
        token_type: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> dict[str, Any]:
        payload = self._decode_jwt(token)
        if payload is None:
            raise InvalidTokenError()
        if token_type is not None and payload.get("token_type") != token_type:
            raise InvalidTokenError()
        if purpose is not None and payload.get("purpose") != purpose:
            raise InvalidTokenError()
        return payload

    def verify_session_token(self, token: str) -> Identity:
        payload = self.verify(token, token_type=SESSION_TOKEN_TYPE)
        if any(claim not in payload for claim in ("sub", "dni", "account_type")):
            raise InvalidTokenError()
        return Identity.from_claims({k: payload.get(k) for k in (*IDENTITY_CLAIMS, "jti")})

    def verify_purpose_token(self, token: str, purpose: str) -> dict[str, Any]:
        payload = self.verify(token, token_type=PURPOSE_TOKEN_TYPE, purpose=purpose)
        return {
            key: value
            for key, value in payload.items()
            if key not in {"iss", "aud", "iat", "exp", "jti", "token_type", "purpose"}
        }

    def remaining_seconds(self, payload: dict[str, Any]) -> int:
        try:
            return max(0, int(float(payload["exp"]) - time.time()))
        except (KeyError, TypeError, ValueError):
            return 0

    # ------------------------------------------------------------- encoding

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted; rejects alg=none and algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_seconds:
            return None
        return payload
