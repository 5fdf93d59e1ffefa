"""Error envelope format and exception-to-response mapping.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from mailshare_admin.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from mailshare_admin.api.schemas import Envelope, ErrorBody
from mailshare_admin.service.errors import (
    AuthenticationError,
    InvalidPasswordError,
    LegacySessionError,
    NotFoundError,
    PreconditionFailedError,
    SessionExpiredError,
    SessionRevokedError,
)
from mailshare_admin.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="missing bearer token")
        assert error.details is None

    def test_details_dict_or_list(self):
        assert ErrorBody(code="forbidden", message="x", details={"status": "forbidden"}).details == {
            "status": "forbidden"
        }
        assert len(ErrorBody(code="validation_error", message="x", details=[{}, {}]).details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="rate_limited", message="not a code this service emits")

    def test_session_codes_accepted(self):
        for code in ("legacy_session", "session_revoked", "session_expired", "invalid_password"):
            assert ErrorBody(code=code, message="m").code == code


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="session_expired", message="session ended"),
            request_id="req-1",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["code"] == "session_expired"
        assert dumped["data"] is None
        assert dumped["request_id"] == "req-1"


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
        ],
    )
    def test_status_codes(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapping_values_are_valid_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="m")


class TestErrorResponseFactory:
    def test_basic(self):
        response = _error_response(401, "missing bearer token")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["details"] is None
        assert data["request_id"]

    def test_code_override(self):
        response = _error_response(400, "setup first", code="precondition_failed")
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "precondition_failed"


class _Payload(BaseModel):
    count: int


@pytest.fixture
def error_client():
    app = FastAPI()
    register_exception_handlers(app)

    raisers = {
        "unauthorized": AuthenticationError("missing bearer token"),
        "legacy": LegacySessionError("token predates session binding"),
        "revoked": SessionRevokedError("session ended, please re-authenticate"),
        "expired": SessionExpiredError("session ended, please re-authenticate"),
        "password": InvalidPasswordError("password does not match"),
        "precondition": PreconditionFailedError(
            "totp setup required", detail={"status": "setup_needed"}
        ),
        "missing": NotFoundError("admin not found"),
        "conflict": ConstraintViolation("admin already exists", {"field": "email"}),
        "boom": RuntimeError("database password=hunter2 leaked"),
    }

    @app.get("/raise/{name}")
    async def _raise(name: str):
        raise raisers[name]

    @app.post("/validate")
    async def _validate(body: _Payload):
        return {"count": body.count}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    @pytest.mark.parametrize(
        "name,status,code",
        [
            ("unauthorized", 401, "unauthorized"),
            ("legacy", 401, "legacy_session"),
            ("revoked", 401, "session_revoked"),
            ("expired", 401, "session_expired"),
            ("password", 401, "invalid_password"),
            ("precondition", 400, "precondition_failed"),
            ("missing", 404, "not_found"),
            ("conflict", 409, "conflict"),
        ],
    )
    def test_domain_errors(self, error_client, name, status, code):
        resp = error_client.get(f"/raise/{name}")
        assert resp.status_code == status
        assert resp.json()["error"]["code"] == code

    def test_precondition_details_preserved(self, error_client):
        resp = error_client.get("/raise/precondition")
        assert resp.json()["error"]["details"] == {"status": "setup_needed"}

    def test_unhandled_error_hides_message(self, error_client):
        resp = error_client.get("/raise/boom")
        body = resp.json()
        assert resp.status_code == 500
        assert body["error"]["code"] == "server_error"
        assert "hunter2" not in body["error"]["message"]

    def test_request_validation_is_400(self, error_client):
        resp = error_client.post("/validate", json={"count": "many"})
        body = resp.json()
        assert resp.status_code == 400
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["field"] == "body.count"
