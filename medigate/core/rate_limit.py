"""
Rate Limiting for Medigate.

Fixed windows aligned to the wall clock: a window of W seconds starts at
every multiple of W since the epoch. Each check increments the counter
first and then compares it with the limit, so the limit-th request in a
window is admitted and the next one is not.

Counters live behind CounterStore. The in-process store keeps one lock per
key; the Redis store relies on INCR inside a MULTI block, which is atomic
per key across instances.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

from medigate.core.clock import Clock

logger = logging.getLogger(__name__)


class RateLimitClass(str, Enum):
    GENERAL = "general"
    LOGIN = "login"
    STRICT = "strict"
    REGISTRATION = "registration"


@dataclass(frozen=True)
class RatePolicy:
    limit: int
    window_seconds: int


POLICIES: dict[RateLimitClass, RatePolicy] = {
    RateLimitClass.GENERAL: RatePolicy(limit=100, window_seconds=900),
    RateLimitClass.LOGIN: RatePolicy(limit=5, window_seconds=900),
    RateLimitClass.STRICT: RatePolicy(limit=10, window_seconds=900),
    RateLimitClass.REGISTRATION: RatePolicy(limit=100, window_seconds=900),
}


@dataclass(frozen=True)
class Allowed:
    limit: int
    remaining: int
    reset_at: int  # epoch seconds

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


@dataclass(frozen=True)
class Denied:
    limit: int
    retry_after: int
    reset_at: int
    reason: str = "limit"

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_at),
            "Retry-After": str(self.retry_after),
        }


Decision = Union[Allowed, Denied]

# Returns True when the request signals look automated.
BotCheck = Callable[[Mapping[str, Any]], bool]


class CounterStoreError(Exception):
    """The counter backend could not be reached."""


# =============================================================================
# Counter Stores
# =============================================================================

class CounterStore(ABC):
    """Atomic per-key counters scoped to a window."""

    @abstractmethod
    async def increment(self, key: str, window_start: int, ttl_seconds: int) -> int:
        """Increment the counter for (key, window_start) and return the new count."""
        pass

    async def close(self) -> None:
        pass


class MemoryCounterStore(CounterStore):
    """
    In-process counters for single-instance deployments and tests.
    Only the current window is kept for each key.
    """

    def __init__(self):
        self._counters: dict[str, tuple[int, int]] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def increment(self, key: str, window_start: int, ttl_seconds: int) -> int:
        async with self._locks[key]:
            current_window, count = self._counters.get(key, (window_start, 0))
            if current_window != window_start:
                count = 0
            count += 1
            self._counters[key] = (window_start, count)
            return count


class RedisCounterStore(CounterStore):
    """Redis-backed counters shared by every instance."""

    def __init__(self, redis_url: str, prefix: str = "medigate:ratelimit:"):
        self.redis_url = redis_url
        self.prefix = prefix
        self._client = None

    async def _get_client(self):
        """Lazy-load Redis client."""
        if self._client is None:
            import redis.asyncio as aioredis
            self._client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def increment(self, key: str, window_start: int, ttl_seconds: int) -> int:
        from redis.exceptions import RedisError

        redis_key = f"{self.prefix}{key}:{window_start}"
        try:
            client = await self._get_client()
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.expire(redis_key, ttl_seconds + 1)
                count, _ = await pipe.execute()
        except RedisError as e:
            logger.error("Redis rate-limit INCR error: %s", e)
            raise CounterStoreError(str(e)) from e
        return int(count)

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None


# =============================================================================
# Limiter
# =============================================================================

class RateLimiter:
    """Checks requests against the per-class policies."""

    def __init__(
        self,
        store: CounterStore,
        clock: Clock,
        policies: Optional[Mapping[RateLimitClass, RatePolicy]] = None,
        bot_check: Optional[BotCheck] = None,
    ):
        self.store = store
        self._clock = clock
        self.policies = dict(policies or POLICIES)
        self.bot_check = bot_check

    async def check(
        self,
        key_class: RateLimitClass,
        key: str,
        *,
        signals: Optional[Mapping[str, Any]] = None,
    ) -> Decision:
        """
        Count one request for (key_class, key).

        The registration class also consults the bot heuristic; a request it
        flags is denied without being counted.
        """
        policy = self.policies[key_class]
        now = self._clock.timestamp()
        epoch = int(now)
        window_start = epoch - epoch % policy.window_seconds
        reset_at = window_start + policy.window_seconds
        retry_after = max(1, math.ceil(reset_at - now))

        if key_class is RateLimitClass.REGISTRATION and self.bot_check and self.bot_check(signals or {}):
            logger.warning("Registration flagged by bot heuristic")
            return Denied(limit=policy.limit, retry_after=retry_after, reset_at=reset_at, reason="bot")

        count = await self.store.increment(f"{key_class.value}:{key}", window_start, policy.window_seconds)
        if count > policy.limit:
            logger.info(
                "Rate limit exceeded for %s",
                key_class.value,
                extra={"rate_class": key_class.value, "count": count},
            )
            return Denied(limit=policy.limit, retry_after=retry_after, reset_at=reset_at)
        return Allowed(limit=policy.limit, remaining=policy.limit - count, reset_at=reset_at)


def default_bot_check(signals: Mapping[str, Any]) -> bool:
    """
    Minimal registration heuristic: a filled honeypot field, or a form
    submitted faster than a person could type it.
    """
    if signals.get("honeypot"):
        return True
    elapsed = signals.get("form_elapsed_ms")
    return isinstance(elapsed, (int, float)) and 0 <= elapsed < 1500
