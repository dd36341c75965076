"""Tests for the JSON error shape and the app-level middlewares."""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from sevr import app as app_module
from sevr.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from sevr.service.errors import (
    AlreadySetUp,
    CodeNotFound,
    NotFoundError,
    ServerError,
    TooManyAttempts,
)
from sevr.storage.errors import ConstraintViolation


class Payload(BaseModel):
    count: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/not-found")
    async def not_found():
        raise NotFoundError("User not found")

    @app.get("/code")
    async def code():
        raise CodeNotFound()

    @app.get("/attempts")
    async def attempts():
        raise TooManyAttempts()

    @app.get("/already")
    async def already():
        raise AlreadySetUp()

    @app.get("/server")
    async def server():
        raise ServerError("Failed to send OTP")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/http")
    async def http():
        raise HTTPException(status_code=403, detail="Admin access required")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("connection string postgresql://user:pw@db leaked")

    @app.post("/validate")
    async def validate(body: Payload):
        return {"count": body.count}

    return TestClient(app, raise_server_exceptions=False)


class TestStatusCodeMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(413) == "payload_too_large"
        assert _error_code_for_status(429) == "rate_limited"

    def test_unknown_status_is_server_error(self):
        assert 418 not in _STATUS_TO_CODE
        assert _error_code_for_status(418) == "server_error"


class TestHandlers:
    @pytest.mark.parametrize(
        "path,status,message,code",
        [
            ("/not-found", 404, "User not found", "not_found"),
            ("/code", 401, "Invalid or expired code", "code_not_found"),
            ("/attempts", 401, "Too many attempts. Please request a new code.", "too_many_attempts"),
            ("/already", 400, "Encryption already set up", "already_set_up"),
            ("/server", 500, "Failed to send OTP", "server_error"),
            ("/conflict", 409, "email already exists", "conflict"),
            ("/http", 403, "Admin access required", "forbidden"),
        ],
    )
    def test_error_shape(self, client, path, status, message, code):
        response = client.get(path)
        assert response.status_code == status
        assert response.json() == {"success": False, "error": message, "code": code}

    def test_uncaught_exception_is_generic(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": "Internal server error",
            "code": "server_error",
        }
        assert "postgresql" not in response.text

    def test_validation_error_is_400(self, client):
        response = client.post("/validate", json={"count": "many"})
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "validation_error"
        assert body["error"].startswith("count:")

    def test_malformed_json_is_400(self, client):
        response = client.post(
            "/validate", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400


class TestAppMiddleware:
    def test_health(self):
        response = TestClient(app_module.app).get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert "timestamp" in body

    def test_correlation_id_echoed(self):
        response = TestClient(app_module.app).get(
            "/api/health", headers={"X-Request-ID": "req-123"}
        )
        assert response.headers["X-Request-ID"] == "req-123"

    def test_correlation_id_generated(self):
        response = TestClient(app_module.app).get("/api/health")
        assert len(response.headers["X-Request-ID"]) == 36

    def test_security_headers(self):
        response = TestClient(app_module.app).get("/api/health")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"

    def test_oversized_body_is_413(self):
        response = TestClient(app_module.app).put(
            "/api/encrypted/data",
            json={"data": "A" * (11 * 1024), "iv": "aXY="},
            headers={"Authorization": "Bearer whatever"},
        )
        assert response.status_code == 413
        assert response.json() == {
            "success": False,
            "error": "Request body too large",
            "code": "payload_too_large",
        }

    def test_oversized_chunked_body_without_length_is_413(self):
        def chunks():
            for _ in range(11):
                yield b"A" * 1024

        response = TestClient(app_module.app).post(
            "/api/auth/request-otp",
            content=chunks(),
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 413
        assert response.json() == {
            "success": False,
            "error": "Request body too large",
            "code": "payload_too_large",
        }

    def test_unknown_route_uses_error_shape(self):
        response = TestClient(app_module.app).get("/api/nope")
        assert response.status_code == 404
        assert response.json()["success"] is False
