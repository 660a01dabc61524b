from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Dict

from fastapi import Response

from algoauth.logging import get_logger
from algoauth.storage.base import TokenCache

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers to response."""
        for name, value in self.headers().items():
            response.headers[name] = value


class RateLimiter:
    """Fixed-window request counter keyed by identity (user id or client IP).

    The first hit of a window fixes its expiry; later hits never extend it.
    Up to ``2 * limit`` requests can pass across a window boundary, which is
    accepted for abuse prevention.

    A limit of zero or less denies every request.
    """

    def __init__(self, cache: TokenCache) -> None:
        self.cache = cache

    @staticmethod
    def _normalize_key(key: str) -> str:
        """Hash the subject so user-supplied values cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return f"rate:{digest}"

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        count, ttl = await self.cache.incr_window(self._normalize_key(key), window_seconds)
        allowed = count <= limit
        if not allowed:
            logger.info("rate_limit_exceeded", key=key, limit=limit, count=count)
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_seconds=ttl,
        )
