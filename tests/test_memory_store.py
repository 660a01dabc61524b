"""Unit tests for the in-memory credential directory and session table."""

from datetime import datetime, timedelta, timezone

import pytest

from algoauth.storage.errors import ConstraintViolation
from algoauth.storage.memory import MemoryStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("alice@example.com", "alice", "hash")


class TestCredentials:
    def test_lookup_is_case_insensitive(self, store, user):
        assert store.get_user_by_email("ALICE@example.com").id == user.id
        assert store.get_user_by_username("Alice").id == user.id

    def test_duplicate_email_rejected(self, store, user):
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("Alice@Example.com", "other", "hash")
        assert excinfo.value.detail["field"] == "email"

    def test_duplicate_username_rejected(self, store, user):
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("other@example.com", "ALICE", "hash")
        assert excinfo.value.detail["field"] == "username"

    def test_returned_records_are_copies(self, store, user):
        user.is_active = False
        assert store.get_user(user.id).is_active is True

    def test_update_password_stamps_change_time(self, store, user, clock):
        assert user.password_changed_at is None
        clock.advance(minutes=5)
        updated = store.update_password(user.id, "new-hash", "argon2id")
        assert updated.password_hash == "new-hash"
        assert updated.password_changed_at == clock.now

    def test_update_password_keeps_given_change_time(self, store, user, clock):
        stamp = clock.now.replace(microsecond=0) + timedelta(seconds=1)
        updated = store.update_password(user.id, "new-hash", "argon2id", changed_at=stamp)
        assert updated.password_changed_at == stamp

    def test_unknown_user_updates_return_none(self, store):
        assert store.update_password("missing", "h", "argon2id") is None
        assert store.set_user_active("missing", False) is None
        assert store.mark_email_verified("missing") is None

    def test_delete_user_drops_sessions(self, store, user, clock):
        store.create_session(user.id, "tok", clock.now + timedelta(hours=1))
        assert store.delete_user(user.id) is True
        assert store.find_session_by_token("tok") is None
        assert store.delete_user(user.id) is False


class TestSessions:
    def test_create_and_find(self, store, user, clock):
        expires = clock.now + timedelta(days=1)
        store.create_session(user.id, "tok-1", expires)

        found = store.find_session_by_token("tok-1")
        assert found.user_id == user.id
        assert found.expires_at == expires

    def test_past_expiry_rejected(self, store, user, clock):
        with pytest.raises(ValueError):
            store.create_session(user.id, "tok", clock.now)

    def test_unknown_user_rejected(self, store, clock):
        with pytest.raises(ConstraintViolation):
            store.create_session("missing", "tok", clock.now + timedelta(hours=1))

    def test_duplicate_token_rejected(self, store, user, clock):
        store.create_session(user.id, "tok", clock.now + timedelta(hours=1))
        with pytest.raises(ConstraintViolation):
            store.create_session(user.id, "tok", clock.now + timedelta(hours=2))

    def test_expired_session_is_absent(self, store, user, clock):
        store.create_session(user.id, "tok", clock.now + timedelta(minutes=10))
        clock.advance(minutes=10)
        assert store.find_session_by_token("tok") is None

    def test_delete_by_token_counts(self, store, user, clock):
        store.create_session(user.id, "tok", clock.now + timedelta(hours=1))
        assert store.delete_session_by_token("tok") == 1
        assert store.delete_session_by_token("tok") == 0

    def test_delete_all_for_user(self, store, user, clock):
        other = store.create_user("bob@example.com", "bob", "hash")
        for token in ("a", "b", "c"):
            store.create_session(user.id, token, clock.now + timedelta(hours=1))
        store.create_session(other.id, "d", clock.now + timedelta(hours=1))

        assert store.delete_all_sessions_for_user(user.id) == 3
        assert store.count_sessions_for_user(user.id) == 0
        assert store.find_session_by_token("d") is not None

    def test_rotate_replaces_token(self, store, user, clock):
        store.create_session(user.id, "old", clock.now + timedelta(hours=1))
        new_expiry = clock.now + timedelta(hours=2)

        rotated = store.rotate_session("old", "new", new_expiry)
        assert rotated.token == "new"
        assert rotated.user_id == user.id
        assert store.find_session_by_token("old") is None
        assert store.find_session_by_token("new").expires_at == new_expiry

    def test_rotate_is_single_use(self, store, user, clock):
        store.create_session(user.id, "old", clock.now + timedelta(hours=1))
        assert store.rotate_session("old", "new-1", clock.now + timedelta(hours=2))
        assert store.rotate_session("old", "new-2", clock.now + timedelta(hours=2)) is None

    def test_rotate_expired_session_fails(self, store, user, clock):
        store.create_session(user.id, "old", clock.now + timedelta(minutes=1))
        clock.advance(minutes=2)
        assert store.rotate_session("old", "new", clock.now + timedelta(hours=1)) is None

    def test_purge_expired(self, store, user, clock):
        store.create_session(user.id, "short", clock.now + timedelta(minutes=1))
        store.create_session(user.id, "long", clock.now + timedelta(days=1))
        clock.advance(minutes=5)

        assert store.purge_expired_sessions() == 1
        assert store.count_sessions_for_user(user.id) == 1
