"""Tests for the session maintenance script against the test runtime."""

import asyncio
import importlib.util
from datetime import timedelta
from pathlib import Path

import pytest

from algoauth.service.runtime import get_runtime
from algoauth.storage.models import utcnow

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "manage_sessions.py"


@pytest.fixture(scope="module")
def manage_sessions():
    spec = importlib.util.spec_from_file_location("manage_sessions", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def user(runtime):
    session = asyncio.run(
        runtime.auth.register("ops@example.com", "ops", "Str0ng!Pass")
    ).unwrap()
    return session.user


def test_purge_expired(manage_sessions, runtime, user):
    runtime.store.create_session(user.id, "short-lived", utcnow() + timedelta(seconds=1))
    runtime.store.sessions["short-lived"].expires_at = utcnow() - timedelta(seconds=1)

    assert manage_sessions.purge_expired(runtime, dry_run=True)["deleted"] == 0
    assert manage_sessions.purge_expired(runtime) == {"status": "purged", "deleted": 1}
    assert runtime.store.count_sessions_for_user(user.id) == 1


def test_revoke_user(manage_sessions, runtime, user):
    result = manage_sessions.revoke_user(runtime, "ops@example.com")
    assert result["status"] == "revoked"
    assert result["deleted"] == 1
    assert runtime.store.count_sessions_for_user(user.id) == 0


def test_revoke_unknown_user(manage_sessions, runtime):
    assert manage_sessions.revoke_user(runtime, "ghost@example.com")["status"] == "not_found"


def test_deactivate(manage_sessions, runtime, user):
    dry = asyncio.run(manage_sessions.deactivate(runtime, "ops@example.com", dry_run=True))
    assert dry["status"] == "dry_run"
    assert runtime.store.get_user(user.id).is_active

    result = asyncio.run(manage_sessions.deactivate(runtime, "ops@example.com"))
    assert result == {"status": "deactivated", "user_id": user.id, "deleted": 1}
    assert not runtime.store.get_user(user.id).is_active

    again = asyncio.run(manage_sessions.deactivate(runtime, "ops@example.com"))
    assert again["status"] == "already_inactive"


def test_main_requires_email(manage_sessions, monkeypatch):
    monkeypatch.delenv("TARGET_EMAIL", raising=False)
    with pytest.raises(SystemExit):
        manage_sessions.main(["revoke-user"])
