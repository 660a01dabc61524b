from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, Optional, Tuple


class MemoryCache:
    """Process-local stand-in for ``RedisCache`` used in tests and dev mode.

    Entries carry an absolute expiry on a monotonic clock (injectable so tests
    can advance time). All operations run under one short lock, which keeps
    increment-and-set-expiry atomic exactly like the Redis script does.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: float) -> Optional[Tuple[str, float]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            self._values.pop(key, None)
            return None
        return entry

    def verify_connection(self) -> None:
        return None

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._values[key] = (value, self._clock() + ttl_seconds)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock()) is not None

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        now = self._clock()
        with self._lock:
            entry = self._live(key, now)
            if entry is None:
                # First hit fixes the window boundary
                count, expires_at = 1, now + window_seconds
            else:
                count, expires_at = int(entry[0]) + 1, entry[1]
            self._values[key] = (str(count), expires_at)
        return count, max(0, math.ceil(expires_at - now))

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._clock())
            self._values.pop(key, None)
            return entry[0] if entry else None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
