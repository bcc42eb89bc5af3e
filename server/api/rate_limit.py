"""In-process sliding-window rate limiter keyed by hashed client address."""
import asyncio
import hashlib
import time
from typing import Callable, Optional

WINDOW_SECONDS = 60
EVICT_EVERY_SECONDS = 300
IDLE_SECONDS = 120


class SlidingWindowRateLimiter:
    """
    At most `limit` requests per client per minute.

    Buckets are sharded across a few locks; idle buckets are evicted
    periodically and, past `max_buckets`, the least recently used half goes.
    """

    def __init__(
        self,
        limit: int,
        max_buckets: int = 10_000,
        shards: int = 16,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.limit = limit
        self.max_buckets = max_buckets
        self.clock = clock or time.time
        self._buckets: dict[str, list[float]] = {}
        self._locks = [asyncio.Lock() for _ in range(shards)]
        self._last_eviction = self.clock()

    @staticmethod
    def bucket_key(client_host: Optional[str]) -> str:
        return "ip:" + hashlib.sha256((client_host or "unknown").encode()).hexdigest()[:16]

    def __len__(self) -> int:
        return len(self._buckets)

    def _evict(self, now: float) -> None:
        for key in [k for k, v in self._buckets.items() if not v or now - v[-1] > IDLE_SECONDS]:
            del self._buckets[key]
        if len(self._buckets) > self.max_buckets:
            by_age = sorted(self._buckets, key=lambda k: self._buckets[k][-1])
            for key in by_age[: len(by_age) // 2]:
                del self._buckets[key]
        self._last_eviction = now

    async def allow(self, client_host: Optional[str]) -> bool:
        """Record one request; False when the client is over its limit."""
        key = self.bucket_key(client_host)
        async with self._locks[hash(key) % len(self._locks)]:
            now = self.clock()
            if now - self._last_eviction > EVICT_EVERY_SECONDS:
                self._evict(now)

            bucket = [t for t in self._buckets.get(key, []) if now - t < WINDOW_SECONDS]
            if len(bucket) >= self.limit:
                self._buckets[key] = bucket
                return False
            bucket.append(now)
            self._buckets[key] = bucket
            return True
