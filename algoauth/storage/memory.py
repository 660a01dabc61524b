from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Optional

from algoauth.logging import get_logger
from algoauth.storage.errors import ConstraintViolation
from algoauth.storage.models import Credential, RefreshSession, utcnow


class MemoryStore:
    """In-memory credential directory and refresh-session table.

    Satisfies the same ``CredentialStore``/``SessionStore`` protocols as
    ``PostgresStore``. Every public method is one critical section on a
    per-store lock, so each operation is atomic but unrelated requests never
    serialize behind a global auth lock. Returned records are copies.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self.users: Dict[str, Credential] = {}
        self.sessions: Dict[str, RefreshSession] = {}
        # RLock so helpers can be called while the lock is held
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # -- credentials -------------------------------------------------

    def _find_user(self, predicate) -> Optional[Credential]:
        return next((u for u in self.users.values() if predicate(u)), None)

    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
    ) -> Credential:
        with self._data_lock:
            if self._find_user(lambda u: u.email.lower() == email.lower()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self._find_user(lambda u: u.username.lower() == username.lower()):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            user = Credential.new(
                email, username, password_hash, password_algo=password_algo
            )
            user.created_at = self._clock()
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[Credential]:
        with self._data_lock:
            user = self._find_user(lambda u: u.email.lower() == email.lower())
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[Credential]:
        with self._data_lock:
            user = self._find_user(lambda u: u.username.lower() == username.lower())
            return replace(user) if user else None

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> Optional[Credential]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.password_algo = password_algo
            user.password_changed_at = changed_at or self._clock()
            return replace(user)

    def mark_email_verified(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_verified = True
            return replace(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[Credential]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return replace(user)

    def update_profile(self, user_id: str, **fields) -> Optional[Credential]:
        """Set directory-owned attributes (premium, level, xp) on a user."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key in ("is_premium", "level", "xp"):
                if key in fields:
                    setattr(user, key, fields[key])
            return replace(user)

    def touch_last_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = self._clock()

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for token, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(token, None)
            return True

    # -- refresh sessions --------------------------------------------

    def create_session(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshSession:
        now = self._clock()
        if expires_at <= now:
            raise ValueError("session expiry must be in the future")
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if token in self.sessions:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "token"}
                )
            sess = RefreshSession(
                token=token, user_id=user_id, expires_at=expires_at, created_at=now
            )
            self.sessions[token] = sess
            return replace(sess)

    def find_session_by_token(self, token: str) -> Optional[RefreshSession]:
        with self._data_lock:
            sess = self.sessions.get(token)
            if not sess:
                return None
            if sess.is_expired(self._clock()):
                # Lazy expiry
                self.sessions.pop(token, None)
                return None
            return replace(sess)

    def delete_session_by_token(self, token: str) -> int:
        with self._data_lock:
            return 1 if self.sessions.pop(token, None) is not None else 0

    def delete_all_sessions_for_user(self, user_id: str) -> int:
        with self._data_lock:
            stale = [t for t, sess in self.sessions.items() if sess.user_id == user_id]
            for token in stale:
                self.sessions.pop(token, None)
            return len(stale)

    def rotate_session(
        self, old_token: str, new_token: str, expires_at: datetime
    ) -> Optional[RefreshSession]:
        now = self._clock()
        with self._data_lock:
            old = self.sessions.get(old_token)
            if old is None or old.is_expired(now):
                self.sessions.pop(old_token, None)
                return None
            if new_token in self.sessions:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "token"}
                )
            self.sessions.pop(old_token)
            sess = RefreshSession(
                token=new_token,
                user_id=old.user_id,
                expires_at=expires_at,
                created_at=now,
            )
            self.sessions[new_token] = sess
            return replace(sess)

    def purge_expired_sessions(self) -> int:
        now = self._clock()
        with self._data_lock:
            stale = [t for t, sess in self.sessions.items() if sess.is_expired(now)]
            for token in stale:
                self.sessions.pop(token, None)
            if stale:
                self.logger.info("expired_sessions_purged", count=len(stale))
            return len(stale)

    def count_sessions_for_user(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for sess in self.sessions.values() if sess.user_id == user_id)
