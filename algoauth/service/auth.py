from __future__ import annotations

import asyncio
import functools
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from algoauth.config import Settings
from algoauth.logging import get_logger, log_auth_event
from algoauth.service.email import Notifier
from algoauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ServerError,
    ServiceUnavailableError,
    TokenExpiredError,
    ValidationError,
)
from algoauth.service.result import Result
from algoauth.service.revocation import RevocationList
from algoauth.service.tokens import AccessTokenClaims, IssuedToken, TokenCodec
from algoauth.storage.base import AuthStore, TokenCache
from algoauth.storage.errors import ConstraintViolation, StoreUnavailable
from algoauth.storage.models import Credential

logger = get_logger(__name__)

T = TypeVar("T")

INVALID_CREDENTIALS = "Invalid email or password"
ACCOUNT_DEACTIVATED = "Account has been deactivated"
_RESET_PREFIX = "auth:password_reset:"
_VERIFY_PREFIX = "auth:email_verification:"


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@dataclass
class AuthContext:
    """Identity resolved for one request by :meth:`AuthService.authenticate`."""

    user_id: str
    email: str
    username: str
    is_verified: bool
    is_premium: bool
    level: int
    access_token: str
    claims: AccessTokenClaims


@dataclass
class IssuedSession:
    user: Credential
    access: IssuedToken
    refresh: IssuedToken


@dataclass
class RefreshedTokens:
    access: IssuedToken
    refresh: Optional[IssuedToken] = None


def _fail_closed(func: Callable[..., Awaitable[Result[T]]]) -> Callable[..., Awaitable[Result[T]]]:
    """Turn a store/cache outage inside an auth flow into a 503 result."""

    @functools.wraps(func)
    async def wrapper(self: "AuthService", *args: Any, **kwargs: Any) -> Result[T]:
        try:
            return await func(self, *args, **kwargs)
        except StoreUnavailable as exc:
            self.logger.error(
                "auth_backend_unavailable",
                operation=func.__name__,
                backend=exc.backend,
                error=exc.message,
            )
            return Result.failure(
                ServiceUnavailableError("Service temporarily unavailable")
            )

    return wrapper


class AuthService:
    """Credential checks, token issuance, session lifecycle and revocation.

    Every call into the store or cache is bounded by ``store_timeout_seconds``;
    the blocking store runs in a worker thread so one slow query never stalls
    unrelated requests. Public flows return a :class:`Result` and never raise
    for expected conditions.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: TokenCache,
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.codec = codec or TokenCodec.from_settings(settings)
        self.revocations = RevocationList(cache)
        self.notifier = notifier
        self.logger = logger
        self._timeout = settings.store_timeout_seconds
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        # Verified against when the account does not exist so that unknown
        # emails cost the same as wrong passwords.
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- bounded I/O ---------------------------------------------------

    async def _store(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(
                f"store call {func.__name__} timed out", backend="store"
            ) from exc

    async def _cache(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable("cache call timed out", backend="cache") from exc

    # -- passwords -----------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def verify_password(self, user: Optional[Credential], password: str) -> bool:
        """Check ``password`` against ``user``; spends a full hash even if user is None."""
        # CPU-bound and holds no store connection, so not under the store timeout.
        if user is None or user.password_algo != "argon2id":
            await asyncio.to_thread(self._verify_hash, self._dummy_hash, password)
            return False
        return await asyncio.to_thread(self._verify_hash, user.password_hash, password)

    # -- sessions ------------------------------------------------------

    async def _issue_session(self, user: Credential) -> Result[IssuedSession]:
        access = self.codec.issue_access(user.id, user.email, user.username)
        refresh = self.codec.issue_refresh(user.id)
        try:
            await self._store(
                self.store.create_session, user.id, refresh.token, refresh.expires_at
            )
        except ConstraintViolation as exc:
            # Token values carry a random jti; a collision means something is broken.
            self.logger.error(
                "refresh_session_integrity_error", user_id=user.id, error=exc.message
            )
            return Result.failure(ServerError("Session could not be created"))
        return Result.success(IssuedSession(user=user, access=access, refresh=refresh))

    async def _discard_user(self, user_id: str) -> None:
        """Undo a registration whose first session could not be opened."""
        try:
            await self._store(self.store.delete_user, user_id)
        except StoreUnavailable as exc:
            self.logger.error(
                "register_rollback_failed", user_id=user_id, error=exc.message
            )

    @_fail_closed
    async def register(
        self, email: str, username: str, password: str
    ) -> Result[IssuedSession]:
        if await self._store(self.store.get_user_by_email, email):
            return Result.failure(
                ConflictError("Email is already registered", detail={"field": "email"})
            )
        if await self._store(self.store.get_user_by_username, username):
            return Result.failure(
                ConflictError("Username is already taken", detail={"field": "username"})
            )
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        try:
            user = await self._store(
                self.store.create_user, email, username, pwd_hash, password_algo=algo
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration.
            field = exc.detail.get("field", "email")
            message = (
                "Username is already taken"
                if field == "username"
                else "Email is already registered"
            )
            return Result.failure(ConflictError(message, detail={"field": field}))
        try:
            issued = await self._issue_session(user)
        except StoreUnavailable:
            await self._discard_user(user.id)
            raise
        if not issued.ok:
            await self._discard_user(user.id)
            return issued
        try:
            await self._send_verification(user)
        except StoreUnavailable as exc:
            # The account is usable; the owner can ask for a new link later.
            self.logger.warning(
                "verification_token_not_issued", user_id=user.id, error=exc.message
            )
        log_auth_event("register", user_id=user.id, logger=self.logger)
        return issued

    @_fail_closed
    async def login(
        self,
        password: str,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Result[IssuedSession]:
        if email:
            user = await self._store(self.store.get_user_by_email, email)
        elif username:
            user = await self._store(self.store.get_user_by_username, username)
        else:
            return Result.failure(ValidationError("Email or username is required"))
        if not await self.verify_password(user, password):
            log_auth_event(
                "login",
                user_id=user.id if user else None,
                success=False,
                logger=self.logger,
                email_hash=_digest(email) if email else None,
                ip_addr=ip_addr,
            )
            return Result.failure(AuthenticationError(INVALID_CREDENTIALS))
        # Checked after the password so deactivation is not an enumeration oracle.
        if not user.is_active:
            log_auth_event(
                "login", user_id=user.id, success=False, logger=self.logger, reason="inactive"
            )
            return Result.failure(AuthenticationError(ACCOUNT_DEACTIVATED))
        await self._store(self.store.touch_last_login, user.id)
        issued = await self._issue_session(user)
        if not issued.ok:
            return issued
        log_auth_event("login", user_id=user.id, logger=self.logger, ip_addr=ip_addr)
        return issued

    @_fail_closed
    async def refresh(self, refresh_token: str) -> Result[RefreshedTokens]:
        """Exchange a refresh token for a new access token.

        With rotation enabled the refresh token is single use: its session row
        is atomically re-keyed to a new token, and a replay of the old value
        (including a concurrent one) finds nothing.
        """
        if not refresh_token:
            return Result.failure(AuthenticationError("Refresh token is required"))
        verified = self.codec.verify_refresh(refresh_token)
        if not verified.ok:
            if isinstance(verified.error, TokenExpiredError):
                return Result.failure(TokenExpiredError("Refresh token has expired"))
            return Result.failure(AuthenticationError("Invalid refresh token"))
        claims = verified.value
        session = await self._store(self.store.find_session_by_token, refresh_token)
        if session is None:
            return Result.failure(AuthenticationError("Refresh token has expired"))
        if session.user_id != claims.user_id:
            self.logger.warning(
                "refresh_session_owner_mismatch",
                claims_user_id=claims.user_id,
                session_user_id=session.user_id,
            )
            return Result.failure(AuthenticationError("Invalid refresh token"))
        user = await self._store(self.store.get_user, session.user_id)
        if user is None or not user.is_active:
            await self._store(self.store.delete_session_by_token, refresh_token)
            return Result.failure(
                AuthenticationError("User not found" if user is None else ACCOUNT_DEACTIVATED)
            )

        access = self.codec.issue_access(user.id, user.email, user.username)
        if not self.settings.rotate_refresh_tokens:
            log_auth_event("refresh", user_id=user.id, logger=self.logger)
            return Result.success(RefreshedTokens(access=access))

        new_refresh = self.codec.issue_refresh(user.id)
        try:
            rotated = await self._store(
                self.store.rotate_session,
                refresh_token,
                new_refresh.token,
                new_refresh.expires_at,
            )
        except ConstraintViolation as exc:
            self.logger.error(
                "refresh_session_integrity_error", user_id=user.id, error=exc.message
            )
            return Result.failure(ServerError("Session could not be created"))
        if rotated is None:
            # Another request consumed this refresh token first.
            log_auth_event(
                "refresh", user_id=user.id, success=False, logger=self.logger, reason="replay"
            )
            return Result.failure(AuthenticationError("Refresh token has expired"))
        log_auth_event("refresh", user_id=user.id, logger=self.logger, rotated=True)
        return Result.success(RefreshedTokens(access=access, refresh=new_refresh))

    @_fail_closed
    async def logout(
        self, ctx: AuthContext, refresh_token: Optional[str] = None
    ) -> Result[int]:
        """Revoke the caller's access token and drop the given refresh session.

        Returns the number of session rows deleted (0 or 1).
        """
        remaining = ctx.claims.remaining_seconds(self._now())
        await self._cache(self.revocations.revoke(ctx.access_token, remaining))
        deleted = 0
        if refresh_token:
            session = await self._store(self.store.find_session_by_token, refresh_token)
            if session and session.user_id == ctx.user_id:
                deleted = await self._store(
                    self.store.delete_session_by_token, refresh_token
                )
            elif session:
                self.logger.warning(
                    "logout_foreign_refresh_token",
                    user_id=ctx.user_id,
                    session_user_id=session.user_id,
                )
        log_auth_event("logout", user_id=ctx.user_id, logger=self.logger)
        return Result.success(deleted)

    # -- request authentication ---------------------------------------

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer":
            return None
        value = value.strip()
        return value or None

    @_fail_closed
    async def authenticate(self, token: Optional[str]) -> Result[AuthContext]:
        """Resolve a bearer token to an active user or say why not.

        Order: presence, signature and expiry, revocation list, then a fresh
        read of the credential so deactivation takes effect immediately.
        """
        if not token:
            return Result.failure(AuthenticationError("Access token is required"))
        verified = self.codec.verify_access(token)
        if not verified.ok:
            return Result.failure(verified.error)
        claims = verified.value
        if await self._cache(self.revocations.is_revoked(token)):
            return Result.failure(AuthenticationError("Token has been revoked"))
        user = await self._store(self.store.get_user, claims.user_id)
        if user is None:
            return Result.failure(AuthenticationError("User not found"))
        if not user.is_active:
            return Result.failure(AuthenticationError(ACCOUNT_DEACTIVATED))
        if user.password_changed_at is not None:
            changed = int(user.password_changed_at.timestamp())
            if int(claims.issued_at.timestamp()) < changed:
                return Result.failure(AuthenticationError("Token has been revoked"))
        return Result.success(
            AuthContext(
                user_id=user.id,
                email=user.email,
                username=user.username,
                is_verified=user.is_verified,
                is_premium=user.is_premium,
                level=user.level,
                access_token=token,
                claims=claims,
            )
        )

    async def optional_authenticate(self, token: Optional[str]) -> Optional[AuthContext]:
        """Same pipeline as :meth:`authenticate`; any failure means anonymous."""
        if not token:
            return None
        result = await self.authenticate(token)
        if not result.ok:
            self.logger.debug(
                "optional_auth_anonymous", reason=result.error.message
            )
            return None
        return result.value

    @_fail_closed
    async def get_current_user(self, ctx: AuthContext) -> Result[Credential]:
        user = await self._store(self.store.get_user, ctx.user_id)
        if user is None:
            return Result.failure(AuthenticationError("User not found"))
        return Result.success(user)

    # -- credential lifecycle -----------------------------------------

    async def _invalidate_sessions(self, user_id: str, reason: str) -> int:
        count = await self._store(self.store.delete_all_sessions_for_user, user_id)
        self.logger.info(
            "user_sessions_invalidated", user_id=user_id, reason=reason, count=count
        )
        return count

    @_fail_closed
    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> Result[int]:
        user = await self._store(self.store.get_user, ctx.user_id)
        if not await self.verify_password(user, current_password):
            log_auth_event(
                "change_password", user_id=ctx.user_id, success=False, logger=self.logger
            )
            return Result.failure(ValidationError("Current password is incorrect"))
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, new_password)
        await self._store(self.store.update_password, user.id, pwd_hash, algo)
        count = await self._invalidate_sessions(user.id, "password_change")
        await self._cache(
            self.revocations.revoke(
                ctx.access_token, ctx.claims.remaining_seconds(self._now())
            )
        )
        log_auth_event("change_password", user_id=user.id, logger=self.logger)
        return Result.success(count)

    @_fail_closed
    async def deactivate_user(self, user_id: str) -> Result[int]:
        """Flag the account inactive and delete every refresh session it holds."""
        user = await self._store(self.store.set_user_active, user_id, False)
        if user is None:
            return Result.failure(ValidationError("User not found"))
        count = await self._invalidate_sessions(user_id, "deactivated")
        log_auth_event("deactivate", user_id=user_id, logger=self.logger)
        return Result.success(count)

    async def _put_one_time(self, prefix: str, user_id: str, ttl_seconds: int) -> str:
        token = secrets.token_hex(32)
        await self._cache(
            self.cache.set_with_ttl(f"{prefix}{_digest(token)}", user_id, ttl_seconds)
        )
        return token

    async def _consume_one_time(self, prefix: str, token: str) -> Optional[str]:
        if not token:
            return None
        return await self._cache(self.cache.pop(f"{prefix}{_digest(token)}"))

    async def _notify(self, method: str, email: str, token: str) -> None:
        if self.notifier is None:
            return
        sent = await asyncio.to_thread(getattr(self.notifier, method), email, token)
        if not sent:
            self.logger.warning("notification_not_delivered", kind=method)

    @_fail_closed
    async def forgot_password(self, email: str) -> Result[None]:
        """Issue a single-use reset token; the answer is identical for unknown emails."""
        user = await self._store(self.store.get_user_by_email, email)
        if user is None or not user.is_active:
            self.logger.info("password_reset_unknown_email", email_hash=_digest(email))
            return Result.success(None)
        token = await self._put_one_time(
            _RESET_PREFIX, user.id, self.settings.password_reset_ttl_seconds
        )
        await self._notify("send_password_reset", user.email, token)
        log_auth_event("forgot_password", user_id=user.id, logger=self.logger)
        return Result.success(None)

    @_fail_closed
    async def reset_password(self, token: str, new_password: str) -> Result[int]:
        user_id = await self._consume_one_time(_RESET_PREFIX, token)
        user = await self._store(self.store.get_user, user_id) if user_id else None
        if user is None:
            self.logger.warning("password_reset_invalid_token")
            return Result.failure(ValidationError("Invalid or expired reset token"))
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, new_password)
        # Token iat is whole seconds; rounding up also rejects tokens minted
        # earlier in the same second as the reset.
        changed_at = self._now().replace(microsecond=0) + timedelta(seconds=1)
        await self._store(
            self.store.update_password, user.id, pwd_hash, algo, changed_at=changed_at
        )
        count = await self._invalidate_sessions(user.id, "password_reset")
        log_auth_event("reset_password", user_id=user.id, logger=self.logger)
        return Result.success(count)

    async def _send_verification(self, user: Credential) -> None:
        token = await self._put_one_time(
            _VERIFY_PREFIX, user.id, self.settings.email_verification_ttl_seconds
        )
        await self._notify("send_email_verification", user.email, token)

    @_fail_closed
    async def resend_verification(self, ctx: AuthContext) -> Result[None]:
        user = await self._store(self.store.get_user, ctx.user_id)
        if user is None:
            return Result.failure(AuthenticationError("User not found"))
        if user.is_verified:
            return Result.failure(ValidationError("Email is already verified"))
        await self._send_verification(user)
        return Result.success(None)

    @_fail_closed
    async def verify_email(self, token: str) -> Result[Credential]:
        user_id = await self._consume_one_time(_VERIFY_PREFIX, token)
        user = (
            await self._store(self.store.mark_email_verified, user_id) if user_id else None
        )
        if user is None:
            self.logger.warning("email_verification_invalid_token")
            return Result.failure(
                ValidationError("Invalid or expired verification token")
            )
        log_auth_event("verify_email", user_id=user.id, logger=self.logger)
        return Result.success(user)
