from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt

from algoauth.config import ConfigurationError, Settings
from algoauth.service.errors import TokenExpiredError, TokenMalformedError
from algoauth.service.result import Result

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = {
    ACCESS: ("sub", "email", "username", "iat", "exp", "jti"),
    REFRESH: ("sub", "iat", "exp", "jti"),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: str
    email: str
    username: str
    issued_at: datetime
    expires_at: datetime
    token_id: str

    def remaining_seconds(self, now: Optional[datetime] = None) -> int:
        return int((self.expires_at - (now or _utcnow())).total_seconds())


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    issued_at: datetime
    expires_at: datetime
    token_id: str


class TokenCodec:
    """Signs and verifies access and refresh JWTs.

    Access and refresh tokens use independent secrets and TTLs and carry a
    ``typ`` claim, so neither can stand in for the other. Each token gets a
    random ``jti`` so two tokens minted for one user in the same second still
    differ. The codec holds no mutable state and does no I/O.
    """

    def __init__(
        self,
        access_secret: Optional[str],
        refresh_secret: Optional[str],
        *,
        access_ttl: timedelta = timedelta(minutes=60),
        refresh_ttl: timedelta = timedelta(days=30),
        algorithm: str = "HS256",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ConfigurationError("access and refresh signing secrets are required")
        if access_secret == refresh_secret:
            raise ConfigurationError("access and refresh signing secrets must differ")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.algorithm = algorithm
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], datetime] = _utcnow
    ) -> "TokenCodec":
        access_secret, refresh_secret = settings.require_signing_secrets()
        return cls(
            access_secret,
            refresh_secret,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            algorithm=settings.jwt_algorithm,
            clock=clock,
        )

    @property
    def access_secret(self) -> str:
        return self._access_secret

    @property
    def refresh_secret(self) -> str:
        return self._refresh_secret

    def _encode(
        self, claims: Dict[str, Any], secret: str, ttl: timedelta, typ: str
    ) -> IssuedToken:
        now = self._clock().replace(microsecond=0)
        expires_at = now + ttl
        payload = {
            **claims,
            "typ": typ,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": secrets.token_urlsafe(16),
        }
        token = jwt.encode(payload, secret, algorithm=self.algorithm)
        return IssuedToken(token=token, expires_at=expires_at)

    def issue_access(self, user_id: str, email: str, username: str) -> IssuedToken:
        return self._encode(
            {"sub": user_id, "email": email, "username": username},
            self._access_secret,
            self.access_ttl,
            ACCESS,
        )

    def issue_refresh(self, user_id: str) -> IssuedToken:
        return self._encode(
            {"sub": user_id}, self._refresh_secret, self.refresh_ttl, REFRESH
        )

    def verify(
        self, token: str, secret: str, *, expected_type: Optional[str] = None
    ) -> Result[Dict[str, Any]]:
        """Check signature, expiry and structure; never raises for a bad token."""
        if not token or not isinstance(token, str):
            return Result.failure(TokenMalformedError())
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            return Result.failure(TokenExpiredError())
        except jwt.InvalidTokenError:
            return Result.failure(TokenMalformedError())
        if expected_type is not None:
            if payload.get("typ") != expected_type:
                return Result.failure(TokenMalformedError())
            missing = [c for c in _REQUIRED_CLAIMS[expected_type] if not payload.get(c)]
            if missing:
                return Result.failure(TokenMalformedError())
        return Result.success(payload)

    def verify_access(self, token: str) -> Result[AccessTokenClaims]:
        return self.verify(token, self._access_secret, expected_type=ACCESS).map(
            lambda p: AccessTokenClaims(
                user_id=str(p["sub"]),
                email=p["email"],
                username=p["username"],
                issued_at=datetime.fromtimestamp(p["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(p["exp"], tz=timezone.utc),
                token_id=p["jti"],
            )
        )

    def verify_refresh(self, token: str) -> Result[RefreshClaims]:
        return self.verify(token, self._refresh_secret, expected_type=REFRESH).map(
            lambda p: RefreshClaims(
                user_id=str(p["sub"]),
                issued_at=datetime.fromtimestamp(p["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(p["exp"], tz=timezone.utc),
                token_id=p["jti"],
            )
        )


__all__ = [
    "ACCESS",
    "REFRESH",
    "AccessTokenClaims",
    "IssuedToken",
    "RefreshClaims",
    "TokenCodec",
]
