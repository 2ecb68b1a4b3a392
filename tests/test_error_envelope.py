"""Tests for the error envelope format and error handling.

Every failure response has the shape:
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
from pydantic import ValidationError

from authcore import app as app_module
from authcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from authcore.api.schemas import Envelope, ErrorBody
from authcore.service.errors import ConflictError, RateLimitedError, ServerError
from authcore.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_generates_request_id(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id

    def test_envelope_status_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "server_error"),
            (418, "validation_error"),
        ],
    )
    def test_error_code_for_status(self, status, code):
        assert _error_code_for_status(status) == code

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")

    def test_error_response_shape(self):
        response = _error_response(404, "session not found", {"id": "s1"})
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "not_found",
            "message": "session not found",
            "details": {"id": "s1"},
        }
        assert body["request_id"]


@pytest.fixture
def failing_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("ip address already blocked", detail={"ip_address": "1.2.3.4"})

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/leaky-constraint")
    async def leaky_constraint():
        raise ConstraintViolation(
            "duplicate key value violates unique constraint at /var/lib/postgresql/data"
        )

    @app.get("/throttled")
    async def throttled():
        raise RateLimitedError("too many failed login attempts", retry_after=120)

    @app.get("/server-error")
    async def server_error():
        raise ServerError("database password is hunter2")

    @app.get("/store-down")
    async def store_down():
        raise StoreUnavailable("connection refused to 10.0.0.5")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_service_error_keeps_code_and_details(self, failing_client):
        response = failing_client.get("/conflict")
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert error["details"] == {"ip_address": "1.2.3.4"}

    def test_constraint_violation_is_conflict(self, failing_client):
        response = failing_client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["message"] == "email already exists"

    def test_constraint_message_scrubbed(self, failing_client):
        response = failing_client.get("/leaky-constraint")
        assert response.status_code == 409
        assert "/var/lib/postgresql" not in response.json()["error"]["message"]

    def test_rate_limited_sets_retry_after(self, failing_client):
        response = failing_client.get("/throttled")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "120"
        assert response.json()["error"]["code"] == "rate_limited"

    @pytest.mark.parametrize("path", ["/server-error", "/store-down", "/boom"])
    def test_server_failures_are_opaque(self, failing_client, path):
        response = failing_client.get(path)
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert body["error"]["message"] == "internal server error"
        assert "hunter2" not in response.text
        assert "10.0.0.5" not in response.text
        assert "secret internals" not in response.text


class TestAppLevelErrors:
    @pytest.fixture
    def client(self):
        return TestClient(app_module.app)

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_validation_error_lists_fields(self, client):
        response = client.post("/v1/auth/login", json={"username": "alice"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert any("password" in entry["loc"] for entry in body["error"]["details"])

    def test_request_id_echoed(self, client):
        response = client.get("/v1/me", headers={"X-Request-ID": "req-123"})
        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_unauthorized_without_token(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
