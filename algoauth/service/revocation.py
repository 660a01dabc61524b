from __future__ import annotations

import hashlib

from algoauth.logging import get_logger
from algoauth.storage.base import TokenCache

logger = get_logger(__name__)

_KEY_PREFIX = "auth:access:revoked:"


def token_fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RevocationList:
    """Access tokens rejected before their natural expiry (logout).

    Entries are keyed by the token's SHA-256 digest and expire with the token
    itself, so the list never grows past the set of still-valid tokens.
    Refresh tokens are not listed here; deleting their session row revokes them.
    """

    def __init__(self, cache: TokenCache) -> None:
        self.cache = cache

    @staticmethod
    def _key(token: str) -> str:
        return f"{_KEY_PREFIX}{token_fingerprint(token)}"

    async def revoke(self, token: str, remaining_ttl_seconds: int) -> bool:
        """Blacklist ``token`` for its remaining lifetime; False if already expired."""
        if remaining_ttl_seconds <= 0:
            return False
        await self.cache.set_with_ttl(self._key(token), "1", int(remaining_ttl_seconds))
        logger.debug(
            "access_token_revoked",
            token_hash=token_fingerprint(token)[:12],
            ttl_seconds=int(remaining_ttl_seconds),
        )
        return True

    async def is_revoked(self, token: str) -> bool:
        return await self.cache.exists(self._key(token))
