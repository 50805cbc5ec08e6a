"""Tests for the error envelope format.

Error responses have the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from authcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    service_error_response,
)
from authcore.api.schemas import Envelope, ErrorBody
from authcore.logging import set_correlation_id
from authcore.service.errors import (
    ChallengeExhaustedError,
    InvalidCredentialsError,
    LockoutError,
    ServerError,
    TokenExpiredError,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="invalid_credentials", message="bad")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="validation_error", message="nope")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="locked")


class TestEnvelope:
    def test_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_follows_correlation_id(self):
        set_correlation_id("corr-1")
        assert Envelope(status="ok").request_id == "corr-1"


class TestStatusMapping:
    @pytest.mark.parametrize("status,code", sorted(_STATUS_TO_CODE.items()))
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = _error_response(404, "missing", {"id": "x"})
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "x"}}


class TestServiceErrors:
    def test_lockout_sets_retry_after(self):
        response = service_error_response(LockoutError(90))
        body = json.loads(response.body)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "90"
        assert body["error"]["details"] == {"retry_after_seconds": 90}

    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (InvalidCredentialsError("x"), 401, "invalid_credentials"),
            (ChallengeExhaustedError("x"), 401, "challenge_exhausted"),
            (TokenExpiredError("x"), 400, "token_expired"),
            (ServerError("x"), 500, "server_error"),
        ],
    )
    def test_codes_and_statuses(self, exc, status, code):
        response = service_error_response(exc)
        assert response.status_code == status
        assert json.loads(response.body)["error"]["code"] == code
        assert "Retry-After" not in response.headers
