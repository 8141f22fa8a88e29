"""
Request throttling behind an injectable counter store.

``BaseCounterStore.hit`` is an increment-and-check with expiry: the first
hit on a key opens a fixed window, later hits inside it only increment.

    MemoryCounterStore  process-local (development, tests, single instance)
    RedisCounterStore   shared across instances (INCR + EXPIRE)

The factory picks Redis whenever real services are in use.
"""

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from food_ordering.core.config import get_settings
from food_ordering.core.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CounterHit:
    count: int
    ttl: int  # seconds until the window resets


class BaseCounterStore(ABC):
    @abstractmethod
    async def hit(self, key: str, window_seconds: int) -> CounterHit:
        """Increment ``key`` and return its count within the current window."""
        pass

    async def close(self) -> None:
        return None


class MemoryCounterStore(BaseCounterStore):
    """Fixed-window counters in a dict; correct for one process only."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key: str, window_seconds: int) -> CounterHit:
        async with self._lock:
            now = self._clock()
            expires_at, count = self._windows.get(key, (0.0, 0))
            if expires_at <= now:
                expires_at, count = now + window_seconds, 0
            count += 1
            self._windows[key] = (expires_at, count)
            self._evict(now)
        return CounterHit(count=count, ttl=max(1, math.ceil(expires_at - now)))

    def _evict(self, now: float) -> None:
        if len(self._windows) < 10_000:
            return
        for stale in [k for k, (exp, _) in self._windows.items() if exp <= now]:
            del self._windows[stale]


class RedisCounterStore(BaseCounterStore):
    """Shared fixed-window counters: ``INCR`` then ``EXPIRE NX`` in one pipeline."""

    def __init__(self, url: str, prefix: str = "food_ordering:throttle"):
        self._redis = aioredis.from_url(url, socket_timeout=2)
        self._prefix = prefix

    async def hit(self, key: str, window_seconds: int) -> CounterHit:
        full_key = f"{self._prefix}:{key}"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(full_key)
            pipe.expire(full_key, window_seconds, nx=True)
            pipe.ttl(full_key)
            count, _, ttl = await pipe.execute()
        return CounterHit(count=int(count), ttl=int(ttl) if ttl and ttl > 0 else window_seconds)

    async def close(self) -> None:
        await self._redis.aclose()


class RateLimiter:
    """``limit`` hits per ``window_seconds`` for each identity in ``scope``."""

    def __init__(self, store: BaseCounterStore, scope: str, limit: int, window_seconds: int):
        self.store = store
        self.scope = scope
        self.limit = limit
        self.window_seconds = window_seconds

    async def check(self, identity: str) -> CounterHit:
        try:
            result = await self.store.hit(f"{self.scope}:{identity}", self.window_seconds)
        except RedisError as e:
            # store outage: let the request through
            logger.warning(f"Rate limit store unavailable for {self.scope}: {e}")
            return CounterHit(count=0, ttl=self.window_seconds)

        if result.count > self.limit:
            logger.info(f"Rate limited {self.scope} for {identity} ({result.count}/{self.limit})")
            raise RateLimitedError(retry_after=result.ttl)
        return result


@lru_cache()
def get_counter_store() -> BaseCounterStore:
    settings = get_settings()
    if settings.use_real_services:
        logger.info("Counter Store: Using RedisCounterStore")
        return RedisCounterStore(settings.redis_url)
    logger.info("Counter Store: Using MemoryCounterStore (development mode)")
    return MemoryCounterStore()


def reset_counter_store() -> None:
    get_counter_store.cache_clear()


def build_limiter(scope: str, store: Optional[BaseCounterStore] = None) -> RateLimiter:
    """Limiter for ``payments`` or ``webhooks`` with limits from settings."""
    settings = get_settings()
    if scope == "webhooks":
        limit, window = settings.webhook_rate_limit_max, settings.webhook_rate_limit_window_seconds
    else:
        limit, window = settings.payment_rate_limit_max, settings.payment_rate_limit_window_seconds
    return RateLimiter(store or get_counter_store(), scope, limit, window)
