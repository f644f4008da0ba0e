"""Tests for the error envelope format and service error mapping.

Error responses always look like:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from authcore.api.error_handling import _error_code_for_status, _error_response
from authcore.api.schemas import Envelope, ErrorBody
from authcore.service import errors


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_domain_codes_accepted(self):
        for code in ("invalid_credentials", "token_expired", "malformed_api_key", "not_a_member"):
            assert ErrorBody(code=code, message="x").code == code


class TestEnvelope:
    def test_request_id_generated(self):
        assert len(Envelope(status="ok").request_id) == 36

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (errors.InvalidCredentials(), 401, "invalid_credentials"),
            (errors.InvalidToken(), 401, "invalid_token"),
            (errors.TokenExpired(), 401, "token_expired"),
            (errors.SessionNotFound(), 401, "session_not_found"),
            (errors.SessionExpired(), 401, "session_expired"),
            (errors.UserNotFound(), 401, "user_not_found"),
            (errors.Malformed(), 401, "malformed_api_key"),
            (errors.NotAMember(), 403, "not_a_member"),
            (errors.BusinessRuleViolation("no"), 422, "business_rule_violation"),
            (errors.RateLimitedError("slow down", retry_after_seconds=900), 429, "rate_limited"),
            (errors.CacheLockTimeout("busy"), 503, "service_unavailable"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.error_code == code
        # Every code a service error can carry must render in an envelope
        ErrorBody(code=exc.error_code, message=exc.message)

    def test_subclasses_stay_catchable_as_authentication_errors(self):
        assert isinstance(errors.TokenExpired(), errors.InvalidToken)
        assert isinstance(errors.SessionNotFound(), errors.AuthenticationError)

    def test_invalid_credentials_message_is_fixed(self):
        assert errors.InvalidCredentials().message == errors.InvalidCredentials.GENERIC_MESSAGE


class TestErrorResponseFactory:
    def test_status_mapping(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(503) == "service_unavailable"
        assert _error_code_for_status(418) == "server_error"

    def test_response_body_and_headers(self):
        response = _error_response(
            429,
            "too many",
            {"retry_after_seconds": 60},
            code="rate_limited",
            headers={"Retry-After": "60"},
        )
        body = json.loads(response.body)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "rate_limited",
            "message": "too many",
            "details": {"retry_after_seconds": 60},
        }
