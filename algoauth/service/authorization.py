"""Privilege predicates evaluated against an already-authenticated identity."""

from __future__ import annotations

from typing import Any, Optional

from algoauth.service.auth import AuthContext
from algoauth.service.errors import AuthenticationError, AuthorizationError
from algoauth.service.result import Result


def _require_identity(ctx: Optional[AuthContext]) -> Result[AuthContext]:
    if ctx is None:
        return Result.failure(AuthenticationError("Authentication required"))
    return Result.success(ctx)


def require_verified(ctx: Optional[AuthContext]) -> Result[AuthContext]:
    result = _require_identity(ctx)
    if result.ok and not ctx.is_verified:
        return Result.failure(AuthorizationError("Email verification required"))
    return result


def require_premium(ctx: Optional[AuthContext]) -> Result[AuthContext]:
    result = _require_identity(ctx)
    if result.ok and not ctx.is_premium:
        return Result.failure(AuthorizationError("Premium subscription required"))
    return result


def require_level(ctx: Optional[AuthContext], min_level: int) -> Result[AuthContext]:
    result = _require_identity(ctx)
    if result.ok and ctx.level < min_level:
        return Result.failure(
            AuthorizationError(
                f"Level {min_level} or higher required",
                detail={"required_level": min_level, "current_level": ctx.level},
            )
        )
    return result


def require_ownership(ctx: Optional[AuthContext], owner_id: Any) -> Result[AuthContext]:
    """Allow only when the named resource owner is the caller; no owner is a denial."""
    result = _require_identity(ctx)
    if result.ok and (owner_id in (None, "") or str(owner_id) != ctx.user_id):
        return Result.failure(
            AuthorizationError("Access denied: You can only access your own resources")
        )
    return result


__all__ = [
    "require_level",
    "require_ownership",
    "require_premium",
    "require_verified",
]
