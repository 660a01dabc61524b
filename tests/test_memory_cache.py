"""Tests for the in-process cache, the fixed-window limiter and the revocation list."""

import pytest

from algoauth.service.rate_limit import RateLimiter, RateLimitResult
from algoauth.service.revocation import RevocationList, token_fingerprint
from algoauth.storage.memory_cache import MemoryCache


class TickClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return TickClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


class TestMemoryCache:
    async def test_values_expire(self, cache, clock):
        await cache.set_with_ttl("k", "v", 10)
        assert await cache.exists("k")
        clock.now += 10
        assert not await cache.exists("k")

    async def test_non_positive_ttl_is_ignored(self, cache):
        await cache.set_with_ttl("k", "v", 0)
        assert not await cache.exists("k")

    async def test_pop_is_single_use(self, cache):
        await cache.set_with_ttl("k", "v", 10)
        assert await cache.pop("k") == "v"
        assert await cache.pop("k") is None

    async def test_incr_window_keeps_first_expiry(self, cache, clock):
        assert await cache.incr_window("w", 60) == (1, 60)
        clock.now += 45
        assert await cache.incr_window("w", 60) == (2, 15)
        clock.now += 15
        assert await cache.incr_window("w", 60) == (1, 60)


class TestRateLimiter:
    async def test_denies_after_limit(self, cache):
        limiter = RateLimiter(cache)
        results = [await limiter.hit("user:1", 5, 60) for _ in range(6)]

        assert all(r.allowed for r in results[:5])
        assert results[4].remaining == 0
        denied = results[5]
        assert not denied.allowed
        assert denied.remaining == 0
        assert 0 < denied.reset_seconds <= 60

    async def test_window_resets(self, cache, clock):
        limiter = RateLimiter(cache)
        for _ in range(6):
            await limiter.hit("user:1", 5, 60)
        clock.now += 60

        result = await limiter.hit("user:1", 5, 60)
        assert result.allowed
        assert result.remaining == 4

    async def test_later_hits_do_not_extend_window(self, cache, clock):
        limiter = RateLimiter(cache)
        await limiter.hit("user:1", 5, 60)
        clock.now += 59
        late = await limiter.hit("user:1", 5, 60)
        assert late.reset_seconds == 1
        clock.now += 1
        assert (await limiter.hit("user:1", 5, 60)).remaining == 4

    async def test_keys_are_independent(self, cache):
        limiter = RateLimiter(cache)
        for _ in range(5):
            await limiter.hit("user:1", 5, 60)
        assert (await limiter.hit("user:2", 5, 60)).allowed

    async def test_non_positive_limit_denies(self, cache):
        limiter = RateLimiter(cache)
        for limit in (0, -1):
            result = await limiter.hit(f"user:{limit}", limit, 60)
            assert not result.allowed
            assert result.remaining == 0
            assert result.reset_seconds == 60

    async def test_invalid_window_falls_back(self, cache):
        limiter = RateLimiter(cache)
        result = await limiter.hit("user:1", 5, 0)
        assert result.allowed
        assert result.reset_seconds == 60

    def test_headers(self):
        result = RateLimitResult(allowed=True, limit=5, remaining=3, reset_seconds=42)
        assert result.headers() == {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "3",
            "X-RateLimit-Reset": "42",
        }


class TestRevocationList:
    async def test_revoked_until_ttl_elapses(self, cache, clock):
        revocations = RevocationList(cache)
        assert await revocations.revoke("token-a", 30)
        assert await revocations.is_revoked("token-a")
        assert not await revocations.is_revoked("token-b")
        clock.now += 30
        assert not await revocations.is_revoked("token-a")

    async def test_expired_token_is_not_listed(self, cache):
        revocations = RevocationList(cache)
        assert await revocations.revoke("token-a", 0) is False
        assert not await revocations.is_revoked("token-a")

    async def test_key_does_not_contain_token(self, cache):
        await RevocationList(cache).revoke("secret-token", 30)
        (key,) = cache._values.keys()
        assert "secret-token" not in key
        assert key.endswith(token_fingerprint("secret-token"))
