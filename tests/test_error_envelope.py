"""Tests for the error envelope and the exception boundary.

Every failure leaves the service as
{"success": false, "error": {"message", "statusCode", "code", "details"?}}.
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from algoauth.api.error_handling import (
    GENERIC_SERVER_ERROR,
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from algoauth.api.schemas import Envelope, ErrorBody
from algoauth.service.errors import RateLimitError, ServerError
from algoauth.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorCodes:
    def test_known_statuses(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _STATUS_TO_CODE[429] == "rate_limited"
        assert _STATUS_TO_CODE[503] == "service_unavailable"

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"


class TestErrorResponse:
    def test_shape(self):
        resp = error_response(403, "Premium subscription required")
        assert resp.status_code == 403
        assert json.loads(resp.body) == {
            "success": False,
            "error": {
                "message": "Premium subscription required",
                "statusCode": 403,
                "code": "forbidden",
            },
        }

    def test_details_and_headers(self):
        resp = error_response(
            429, "slow down", details={"limit": 5}, headers={"Retry-After": "30"}
        )
        body = json.loads(resp.body)
        assert body["error"]["details"] == {"limit": 5}
        assert resp.headers["Retry-After"] == "30"

    def test_error_body_model(self):
        body = ErrorBody(message="x", statusCode=400)
        assert body.code is None
        assert Envelope().success is True


class Payload(BaseModel):
    name: str


def _boundary_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("select * from app_user")

    @app.get("/down")
    async def down():
        raise StoreUnavailable("pool exhausted", backend="postgres")

    @app.get("/dup")
    async def dup():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/limited")
    async def limited():
        raise RateLimitError("Too many", headers={"X-RateLimit-Remaining": "0"})

    @app.get("/server")
    async def server():
        raise ServerError("Session could not be created")

    @app.post("/payload")
    async def payload(body: Payload):
        return {"ok": True}

    return app


@pytest.fixture
def client():
    return TestClient(_boundary_app(), raise_server_exceptions=False)


class TestBoundary:
    def test_unexpected_exception_is_generic_500(self, client):
        resp = client.get("/boom")
        assert resp.status_code == 500
        body = resp.json()
        assert body["error"]["message"] == GENERIC_SERVER_ERROR
        assert "app_user" not in resp.text

    def test_store_outage_is_503(self, client):
        resp = client.get("/down")
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "service_unavailable"
        assert "pool" not in resp.text

    def test_constraint_violation_is_409(self, client):
        resp = client.get("/dup")
        assert resp.status_code == 409
        assert resp.json()["error"]["details"] == {"field": "email"}

    def test_service_error_headers_pass_through(self, client):
        resp = client.get("/limited")
        assert resp.status_code == 429
        assert resp.headers["X-RateLimit-Remaining"] == "0"

    def test_server_error(self, client):
        resp = client.get("/server")
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "server_error"

    def test_request_validation_is_400(self, client):
        resp = client.post("/payload", json={})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["message"] == "Validation failed"
        assert error["details"][0]["field"] == "name"

    def test_unknown_route_is_404_envelope(self, client):
        resp = client.get("/nowhere")
        assert resp.status_code == 404
        assert resp.json()["success"] is False
        assert resp.json()["error"]["code"] == "not_found"
