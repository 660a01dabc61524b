from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Credential:
    """User record as held by the credential directory.

    The auth core reads it and reacts to password changes and deactivation;
    profile data (level, xp, premium) is only read for authorization checks.
    """

    id: str
    email: str
    username: str
    password_hash: str
    password_algo: str = "argon2id"
    is_active: bool = True
    is_verified: bool = False
    is_premium: bool = False
    level: int = 1
    xp: int = 0
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        username: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
    ) -> "Credential":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            username=username,
            password_hash=password_hash,
            password_algo=password_algo,
        )

    def public_dict(self) -> dict:
        """Fields safe to return to the account owner."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "isActive": self.is_active,
            "isVerified": self.is_verified,
            "isPremium": self.is_premium,
            "level": self.level,
            "xp": self.xp,
            "createdAt": self.created_at.isoformat(),
            "lastLogin": self.last_login_at.isoformat() if self.last_login_at else None,
        }


@dataclass
class RefreshSession:
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at
