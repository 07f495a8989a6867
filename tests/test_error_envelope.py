"""Tests for the error envelope and the status to code mapping.

Error responses look like:
{
    "status": "error",
    "data": null,
    "error": {"code": "<stable_code>", "message": "<text>", "details": <any>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from clinicore.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from clinicore.api.schemas import Envelope, ErrorBody
from clinicore.logging import correlation_id_var
from clinicore.service import errors


class TestErrorBody:
    def test_required_fields(self):
        body = ErrorBody(code="unauthorized", message="invalid credentials")
        assert body.details is None

    def test_details_accepts_dicts_and_lists(self):
        assert ErrorBody(code="validation_error", message="x", details={"f": 1}).details == {"f": 1}
        assert len(ErrorBody(code="validation_error", message="x", details=[{}, {}]).details) == 2

    def test_missing_fields_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="no code")
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    @pytest.mark.parametrize(
        "exc_class",
        [
            errors.ValidationError,
            errors.AlreadyUsedError,
            errors.AuthenticationError,
            errors.ForbiddenError,
            errors.PlanLimitExceededError,
            errors.NotFoundError,
            errors.ConflictError,
            errors.RateLimitedError,
            errors.ServerError,
            errors.DeliveryError,
        ],
    )
    def test_every_service_error_code_is_accepted(self, exc_class):
        ErrorBody(code=exc_class.error_code, message="x")


class TestEnvelope:
    def test_status_pattern(self):
        assert Envelope(status="ok").status == "ok"
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        first, second = Envelope(status="ok"), Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"


class TestErrorResponse:
    def test_response_shape(self):
        response = _error_response(404, "patient not found", {"id": "p-1"})
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"] == {"code": "not_found", "message": "patient not found", "details": {"id": "p-1"}}
        assert body["request_id"]

    def test_explicit_code_wins(self):
        body = json.loads(_error_response(403, "limit", code="limit_exceeded").body)
        assert body["error"]["code"] == "limit_exceeded"

    def test_request_id_follows_correlation_id(self):
        token = correlation_id_var.set("req-777")
        try:
            body = json.loads(_error_response(401, "nope").body)
        finally:
            correlation_id_var.reset(token)
        assert body["request_id"] == "req-777"
