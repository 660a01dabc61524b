"""Tests for the FastAPI dependency chain on a purpose-built app.

Tests cover:
- authenticate / optional_authenticate
- Verified, premium, level and ownership guards
- Per-user rate limiting and its headers
"""

import asyncio

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from algoauth.api.dependencies import (
    authenticate,
    optional_authenticate,
    rate_limit_authenticated,
    require_level,
    require_ownership,
    require_premium,
    require_verified,
)
from algoauth.api.error_handling import register_exception_handlers
from algoauth.service.runtime import get_runtime


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/whoami")
    async def whoami(ctx=Depends(authenticate)):
        return {"userId": ctx.user_id}

    @app.get("/maybe")
    async def maybe(ctx=Depends(optional_authenticate)):
        return {"userId": ctx.user_id if ctx else None}

    @app.get("/verified")
    async def verified(ctx=Depends(require_verified)):
        return {"ok": True}

    @app.get("/premium")
    async def premium(ctx=Depends(require_premium)):
        return {"ok": True}

    @app.get("/advanced")
    async def advanced(ctx=Depends(require_level(3))):
        return {"ok": True}

    @app.get("/users/{userId}/progress")
    async def progress(userId: str, ctx=Depends(require_ownership())):
        return {"ok": True}

    @app.post("/submissions")
    async def submit(ctx=Depends(require_ownership())):
        return {"ok": True}

    @app.get("/limited")
    async def limited(ctx=Depends(rate_limit_authenticated(limit=2, window_seconds=60))):
        return {"ok": True}

    return app


@pytest.fixture
def client():
    return TestClient(_build_app())


@pytest.fixture
def account():
    runtime = get_runtime()
    session = asyncio.run(
        runtime.auth.register("learner@example.com", "learner", "Str0ng!Pass")
    ).unwrap()
    return {
        "id": session.user.id,
        "headers": {"Authorization": f"Bearer {session.access.token}"},
    }


class TestAuthenticate:
    def test_valid_token(self, client, account):
        resp = client.get("/whoami", headers=account["headers"])
        assert resp.status_code == 200
        assert resp.json() == {"userId": account["id"]}

    def test_missing_header(self, client):
        resp = client.get("/whoami")
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Access token is required"

    def test_non_bearer_scheme(self, client, account):
        token = account["headers"]["Authorization"].split()[1]
        resp = client.get("/whoami", headers={"Authorization": f"Basic {token}"})
        assert resp.status_code == 401

    def test_malformed_token(self, client):
        resp = client.get("/whoami", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid token"

    def test_optional_anonymous_and_identified(self, client, account):
        assert client.get("/maybe").json() == {"userId": None}
        assert client.get(
            "/maybe", headers={"Authorization": "Bearer nope"}
        ).json() == {"userId": None}
        assert client.get("/maybe", headers=account["headers"]).json() == {
            "userId": account["id"]
        }


class TestPrivilegeGuards:
    def test_unverified_user_blocked(self, client, account):
        resp = client.get("/verified", headers=account["headers"])
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "Email verification required"

    def test_verified_user_allowed(self, client, account):
        get_runtime().store.mark_email_verified(account["id"])
        assert client.get("/verified", headers=account["headers"]).status_code == 200

    def test_premium(self, client, account):
        assert client.get("/premium", headers=account["headers"]).status_code == 403
        get_runtime().store.update_profile(account["id"], is_premium=True)
        assert client.get("/premium", headers=account["headers"]).status_code == 200

    def test_level(self, client, account):
        resp = client.get("/advanced", headers=account["headers"])
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "Level 3 or higher required"

        get_runtime().store.update_profile(account["id"], level=3)
        assert client.get("/advanced", headers=account["headers"]).status_code == 200

    def test_guards_require_authentication(self, client):
        for path in ("/verified", "/premium", "/advanced"):
            assert client.get(path).status_code == 401


class TestOwnership:
    def test_own_resource_by_path(self, client, account):
        resp = client.get(f"/users/{account['id']}/progress", headers=account["headers"])
        assert resp.status_code == 200

    def test_foreign_resource_by_path(self, client, account):
        resp = client.get("/users/someone-else/progress", headers=account["headers"])
        assert resp.status_code == 403
        assert (
            resp.json()["error"]["message"]
            == "Access denied: You can only access your own resources"
        )

    def test_owner_from_body(self, client, account):
        ok = client.post(
            "/submissions", json={"userId": account["id"]}, headers=account["headers"]
        )
        denied = client.post(
            "/submissions", json={"userId": "someone-else"}, headers=account["headers"]
        )
        assert ok.status_code == 200
        assert denied.status_code == 403

    def test_missing_owner_is_denied(self, client, account):
        """A request that names no owner cannot pass the ownership guard."""
        resp = client.post("/submissions", json={}, headers=account["headers"])
        assert resp.status_code == 403
        assert (
            resp.json()["error"]["message"]
            == "Access denied: You can only access your own resources"
        )

    def test_blank_owner_is_denied(self, client, account):
        resp = client.post(
            "/submissions", json={"userId": ""}, headers=account["headers"]
        )
        assert resp.status_code == 403


class TestRateLimitAuthenticated:
    def test_headers_and_rejection(self, client, account):
        first = client.get("/limited", headers=account["headers"])
        assert first.status_code == 200
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"

        client.get("/limited", headers=account["headers"])
        blocked = client.get("/limited", headers=account["headers"])
        assert blocked.status_code == 429
        assert blocked.headers["X-RateLimit-Remaining"] == "0"
        assert int(blocked.headers["Retry-After"]) >= 1
        assert blocked.json()["error"]["code"] == "rate_limited"

    def test_unauthenticated_request_is_401_not_429(self, client):
        assert client.get("/limited").status_code == 401
