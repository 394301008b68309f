"""Tests for the error envelope format and exception mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<STABLE_CODE>", "message": "<human readable>", "details": ...},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from korella.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from korella.api.schemas import Envelope, ErrorBody
from korella.service.errors import RateLimitedError, TokenError, UpgradeRequiredError
from korella.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="UNAUTHORIZED", message="Invalid credentials")
        assert error.details is None

    def test_details_may_be_a_list(self):
        error = ErrorBody(
            code="VALIDATION_ERROR",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="I'm a teapot")

    def test_oauth_redirect_codes_are_accepted(self):
        assert ErrorBody(code="state_mismatch", message="x").code == "state_mismatch"

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="SERVER_ERROR")


class TestEnvelope:
    def test_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(
                code="RATE_LIMITED", message="Too many requests", details={"retry_after": 60}
            ),
            request_id="req-1",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["data"] is None
        assert dumped["request_id"] == "req-1"


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "VALIDATION_ERROR"),
            (401, "UNAUTHORIZED"),
            (403, "FORBIDDEN"),
            (404, "NOT_FOUND"),
            (409, "CONFLICT"),
            (423, "ACCOUNT_LOCKED"),
            (429, "RATE_LIMITED"),
            (503, "SERVICE_UNAVAILABLE"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "SERVER_ERROR"

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    def test_basic_response(self):
        response = _error_response(401, "Invalid credentials")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "UNAUTHORIZED"
        assert data["request_id"]

    def test_custom_code_and_headers(self):
        response = _error_response(
            429, "Slow down", code="RATE_LIMITED", headers={"Retry-After": "30"}
        )
        assert response.headers["Retry-After"] == "30"


@pytest.fixture
def error_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/token")
    async def token_error():
        raise TokenError(TokenError.EXPIRED, "Session expired. Please login again")

    @app.get("/limited")
    async def limited():
        raise RateLimitedError("Too many requests", detail={"retry_after": 12})

    @app.get("/upgrade")
    async def upgrade():
        raise UpgradeRequiredError("Needs pro", detail={"required_tiers": ["pro"]})

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/down")
    async def down():
        raise StoreUnavailable("database unavailable")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_token_error_keeps_reason_code(self, error_app):
        resp = error_app.get("/token")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "EXPIRED"

    def test_rate_limit_sets_retry_after(self, error_app):
        resp = error_app.get("/limited")
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "12"

    def test_tier_denial_carries_details(self, error_app):
        body = error_app.get("/upgrade").json()
        assert body["error"]["code"] == "UPGRADE_REQUIRED"
        assert body["error"]["details"] == {"required_tiers": ["pro"]}

    def test_constraint_violation_is_conflict(self, error_app):
        resp = error_app.get("/conflict")
        assert resp.status_code == 409
        assert resp.json()["error"]["details"] == {"field": "email"}

    def test_store_unavailable_is_503(self, error_app):
        resp = error_app.get("/down")
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "SERVICE_UNAVAILABLE"
        assert resp.headers["Retry-After"] == "5"

    def test_unhandled_exception_hides_internals(self, error_app):
        resp = error_app.get("/boom")
        assert resp.status_code == 500
        assert resp.json()["error"] == {
            "code": "SERVER_ERROR",
            "message": "internal server error",
            "details": None,
        }
