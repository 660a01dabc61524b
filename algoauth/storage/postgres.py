from __future__ import annotations

import hashlib
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from algoauth.logging import get_logger, sanitize_error_message
from algoauth.storage.errors import ConstraintViolation, StoreUnavailable
from algoauth.storage.models import Credential, RefreshSession

_USER_COLUMNS = (
    "id, email, username, password_hash, password_algo, is_active, is_verified, "
    "is_premium, level, xp, created_at, last_login_at, password_changed_at"
)


def _token_digest(token: str) -> str:
    """Refresh tokens are stored as SHA-256 digests, never in clear."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class PostgresStore:
    """Postgres-backed credential directory and refresh-session table.

    Every operation is a single statement on a pooled connection. The schema
    (``app_user`` and ``refresh_session``) is owned by the platform's
    migrations and only verified here.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StoreUnavailable("database pool exhausted", backend="postgres") from exc
        except psycopg.OperationalError as exc:
            self.logger.error(
                "postgres_unavailable", error=sanitize_error_message(str(exc))
            )
            raise StoreUnavailable("database unavailable", backend="postgres") from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = ["app_user", "refresh_session"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run the platform migrations first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> Credential:
        return Credential(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            is_active=row.get("is_active", True),
            is_verified=row.get("is_verified", False),
            is_premium=row.get("is_premium", False),
            level=row.get("level", 1),
            xp=row.get("xp", 0),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            last_login_at=row.get("last_login_at"),
            password_changed_at=row.get("password_changed_at"),
        )

    def _fetch_user(self, where: str, param: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {where}", (param,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
    ) -> Credential:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (id, email, username, password_hash, password_algo)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (user_id, email, username, password_hash, password_algo),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "username" if "username" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[Credential]:
        return self._fetch_user("id = %s", user_id)

    def get_user_by_email(self, email: str) -> Optional[Credential]:
        return self._fetch_user("lower(email) = lower(%s)", email)

    def get_user_by_username(self, username: str) -> Optional[Credential]:
        return self._fetch_user("lower(username) = lower(%s)", username)

    def _update_user(self, assignments: str, params: tuple) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING {_USER_COLUMNS}",
                params,
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> Optional[Credential]:
        return self._update_user(
            "password_hash = %s, password_algo = %s,"
            " password_changed_at = COALESCE(%s::timestamptz, now())",
            (password_hash, password_algo, changed_at, user_id),
        )

    def mark_email_verified(self, user_id: str) -> Optional[Credential]:
        return self._update_user("is_verified = TRUE", (user_id,))

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[Credential]:
        return self._update_user("is_active = %s", (is_active, user_id))

    def touch_last_login(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = now() WHERE id = %s", (user_id,)
            )

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM refresh_session WHERE user_id = %s", (user_id,))
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # refresh sessions
    def create_session(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshSession:
        now = datetime.now(timezone.utc)
        if expires_at <= now:
            raise ValueError("session expiry must be in the future")
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_session (token_hash, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING user_id, expires_at, created_at
                    """,
                    (_token_digest(token), user_id, expires_at, now),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return RefreshSession(
            token=token,
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def find_session_by_token(self, token: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id, expires_at, created_at FROM refresh_session
                WHERE token_hash = %s AND expires_at > now()
                """,
                (_token_digest(token),),
            ).fetchone()
        if not row:
            return None
        return RefreshSession(
            token=token,
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def delete_session_by_token(self, token: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_session WHERE token_hash = %s",
                (_token_digest(token),),
            )
            return cur.rowcount

    def delete_all_sessions_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_session WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

    def rotate_session(
        self, old_token: str, new_token: str, expires_at: datetime
    ) -> Optional[RefreshSession]:
        """Swap a live session's token in one UPDATE; None if it is already gone."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE refresh_session
                    SET token_hash = %s, expires_at = %s, created_at = now()
                    WHERE token_hash = %s AND expires_at > now()
                    RETURNING user_id, expires_at, created_at
                    """,
                    (_token_digest(new_token), expires_at, _token_digest(old_token)),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        if not row:
            return None
        return RefreshSession(
            token=new_token,
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def purge_expired_sessions(self) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_session WHERE expires_at <= now()")
            count = cur.rowcount
        if count:
            self.logger.info("expired_sessions_purged", count=count)
        return count

    def count_sessions_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM refresh_session WHERE user_id = %s AND expires_at > now()",
                (user_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    def close(self) -> None:
        self.pool.close()
