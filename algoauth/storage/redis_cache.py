from __future__ import annotations

from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from algoauth.logging import get_logger
from algoauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for revocation entries, rate counters and one-time tokens.

    Redis failures surface as ``StoreUnavailable`` so callers fail closed.
    """

    # Fixed window: INCR, and EXPIRE only on the first hit of the window, in
    # one atomic step. A key found without a TTL gets one, so a counter can
    # never outlive its window.
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _unavailable(op: str, exc: Exception) -> StoreUnavailable:
        logger.error("redis_operation_failed", op=op, error=str(exc))
        return StoreUnavailable("cache unavailable", backend="redis")

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            await self.client.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            raise self._unavailable("set", exc) from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(key))
        except RedisError as exc:
            raise self._unavailable("exists", exc) from exc

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count one hit in the current window; returns (count, seconds_left)."""
        try:
            count, ttl = await self._fixed_window(keys=[key], args=[window_seconds])
        except RedisError as exc:
            raise self._unavailable("incr_window", exc) from exc
        return int(count), max(0, int(ttl))

    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete a key (single-use tokens)."""
        try:
            return await self.client.getdel(key)
        except RedisError as exc:
            raise self._unavailable("getdel", exc) from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            raise self._unavailable("delete", exc) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            raise self._unavailable("ping", exc) from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
