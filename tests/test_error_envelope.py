"""Tests for the error envelope format and exception handlers.

Error responses have the shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from scopechat.api.error_handling import (
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from scopechat.api.schemas import Envelope, ErrorBody
from scopechat.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    ServerError,
    UpstreamError,
    UpstreamTimeoutError,
    ValidationError,
)
from scopechat.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid token")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_generates_request_id(self):
        envelope = Envelope(status="error", error=ErrorBody(code="not_found", message="x"))
        assert envelope.request_id

    def test_envelope_status_is_constrained(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (404, "not_found"),
            (413, "validation_error"),
            (418, "validation_error"),
            (500, "server_error"),
            (502, "server_error"),
        ],
    )
    def test_error_code_for_status(self, status, code):
        assert _error_code_for_status(status) == code

    def test_error_response_body(self):
        response = _error_response(404, "project not found", {"project_id": "p1"})
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "not_found",
            "message": "project not found",
            "details": {"project_id": "p1"},
        }
        assert body["request_id"]


class _Body(BaseModel):
    count: int


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    @app.post("/typed")
    async def typed(body: _Body):
        return {"count": body.count}

    return TestClient(app)


class TestHandlers:
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (ValidationError("bad input"), 400, "validation_error"),
            (InvalidCredentialsError("invalid email or password"), 400, "invalid_credentials"),
            (ConflictError("email already registered"), 400, "conflict"),
            (AuthenticationError("invalid or expired token"), 401, "unauthorized"),
            (NotFoundError("project not found"), 404, "not_found"),
            (UpstreamTimeoutError("too slow"), 500, "upstream_timeout"),
            (UpstreamError("unavailable"), 500, "upstream_error"),
            (ServerError("oops"), 500, "server_error"),
        ],
    )
    def test_service_errors(self, exc, status, code):
        client = _app_raising(exc)

        resp = client.get("/boom")

        assert resp.status_code == status
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert body["error"]["message"] == exc.message

    def test_status_override(self):
        client = _app_raising(ValidationError("file too large", status_code=413))

        resp = client.get("/boom")

        assert resp.status_code == 413
        assert resp.json()["error"]["code"] == "validation_error"

    def test_constraint_violation_is_conflict(self):
        client = _app_raising(ConstraintViolation("email already exists", {"field": "email"}))

        resp = client.get("/boom")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "conflict"
        assert resp.json()["error"]["details"] == {"field": "email"}

    def test_request_validation_is_400_without_echoed_input(self):
        client = _app_raising(ValidationError("unused"))

        resp = client.post("/typed", json={"count": "secret-value"})

        assert resp.status_code == 400
        body = resp.json()
        assert body["error"]["code"] == "validation_error"
        assert "secret-value" not in resp.text
        assert body["error"]["details"][0]["loc"] == ["body", "count"]
