from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Tuple

from algoauth.storage.models import Credential, RefreshSession


class CredentialStore(Protocol):
    """User directory consumed by the auth core."""

    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
    ) -> Credential: ...

    def get_user(self, user_id: str) -> Optional[Credential]: ...

    def get_user_by_email(self, email: str) -> Optional[Credential]: ...

    def get_user_by_username(self, username: str) -> Optional[Credential]: ...

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> Optional[Credential]: ...

    def mark_email_verified(self, user_id: str) -> Optional[Credential]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[Credential]: ...

    def touch_last_login(self, user_id: str) -> None: ...

    def delete_user(self, user_id: str) -> bool: ...


class SessionStore(Protocol):
    """Refresh-session table keyed by the refresh-token value."""

    def create_session(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshSession: ...

    def find_session_by_token(self, token: str) -> Optional[RefreshSession]: ...

    def delete_session_by_token(self, token: str) -> int: ...

    def delete_all_sessions_for_user(self, user_id: str) -> int: ...

    def rotate_session(
        self, old_token: str, new_token: str, expires_at: datetime
    ) -> Optional[RefreshSession]: ...

    def purge_expired_sessions(self) -> int: ...

    def count_sessions_for_user(self, user_id: str) -> int: ...


class AuthStore(CredentialStore, SessionStore, Protocol):
    """A backend that serves both the directory and the session table."""

    def verify_connection(self) -> None: ...


class TokenCache(Protocol):
    """TTL key-value cache behind revocation, rate limiting and one-time tokens."""

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


__all__ = ["CredentialStore", "SessionStore", "AuthStore", "TokenCache"]
