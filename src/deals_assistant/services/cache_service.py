"""Two-tier response cache and query rate limiter.

Redis is the authoritative tier when configured. A bounded in-process map
backs it up and takes over entirely when Redis is absent or failing. The
in-process tier is unsynchronized and relies on single-threaded asyncio
scheduling; multi-process deployments must configure Redis.
"""

import asyncio
import hashlib
import json
import math
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from redis.asyncio import Redis

from deals_assistant.config import Settings, get_settings
from deals_assistant.utils.logging import get_logger

logger = get_logger("cache_service")

PERIOD_SECONDS: Dict[str, int] = {"minute": 60, "day": 86400}


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class MemoryCache:
    """Bounded map with lazy expiry.

    At capacity, expired entries are dropped first; only then is the least
    recently used live entry evicted. A hit re-inserts.
    """

    def __init__(self, max_entries: int = 1000, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: str, value: Any, ttl: float) -> None:
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            self.purge_expired()
        if len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class RateLimitCounter:
    count: int
    remaining: int
    reset_at: float


@dataclass
class RateLimitDecision:
    limited: bool
    message: Optional[str] = None
    retry_after: Optional[int] = None
    remaining: Dict[str, int] = field(default_factory=dict)


class CacheService:
    """Exact-match/tool-result cache plus per-identity query counters."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        redis_client: Optional[Redis] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self._redis = redis_client
        self._clock = clock
        self._memory = MemoryCache(self.settings.cache.memory_max_entries, clock)
        self._counters = MemoryCache(self.settings.rate_limit.memory_max_keys, clock)
        self._hits = 0
        self._misses = 0
        self._sets = 0

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    def _ttl_for(self, cache_type: str) -> int:
        if cache_type == "tool":
            return self.settings.cache.tool_ttl
        if cache_type == "semantic":
            return self.settings.cache.semantic_ttl
        return self.settings.cache.exact_ttl

    def make_key(self, cache_type: str, raw: str) -> str:
        """``{prefix}:{type}:{sha256(lower(trim(raw)))[:32]}``"""
        digest = hashlib.sha256(raw.strip().lower().encode("utf-8")).hexdigest()[:32]
        return f"{self.settings.cache.key_prefix}:{cache_type}:{digest}"

    async def get(self, cache_type: str, raw: str) -> Optional[Any]:
        if not self.settings.features.caching_enabled:
            return None

        key = self.make_key(cache_type, raw)
        data: Optional[str] = None

        if self._redis is not None:
            try:
                data = await self._redis.get(key)
            except Exception as e:
                logger.warning(f"Redis cache read failed, using memory tier: {e}")

        if data is None:
            data = self._memory.get(key)

        if data is None:
            self._misses += 1
            return None

        self._hits += 1
        return json.loads(data)

    async def set(self, cache_type: str, raw: str, value: Any, ttl: Optional[int] = None) -> None:
        if not self.settings.features.caching_enabled:
            return

        key = self.make_key(cache_type, raw)
        ttl = ttl or self._ttl_for(cache_type)
        data = json.dumps(value, default=str)

        if self._redis is not None:
            try:
                await self._redis.set(key, data, ex=ttl)
            except Exception as e:
                logger.warning(f"Redis cache write failed, memory tier only: {e}")

        self._memory.set(key, data, ttl)
        self._sets += 1

    async def invalidate(self, cache_type: str, raw: str) -> None:
        key = self.make_key(cache_type, raw)
        if self._redis is not None:
            try:
                await self._redis.delete(key)
            except Exception as e:
                logger.warning(f"Redis cache delete failed: {e}")
        self._memory.delete(key)

    async def get_response(self, message: str) -> Optional[Dict[str, Any]]:
        return await self.get("exact", message)

    async def set_response(self, message: str, payload: Dict[str, Any]) -> None:
        await self.set("exact", message, payload)

    @staticmethod
    def _tool_key(tool_name: str, args: Dict[str, Any]) -> str:
        return f"{tool_name}:{json.dumps(args, sort_keys=True, default=str)}"

    async def get_tool_result(self, tool_name: str, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self.get("tool", self._tool_key(tool_name, args))

    async def set_tool_result(self, tool_name: str, args: Dict[str, Any], result: Dict[str, Any]) -> None:
        await self.set("tool", self._tool_key(tool_name, args), result)

    def stats(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses
        hit_rate = (self._hits / lookups * 100) if lookups else 0.0
        return {
            "hits": self._hits,
            "misses": self._misses,
            "sets": self._sets,
            "hitRate": f"{hit_rate:.1f}%",
            "memorySize": len(self._memory),
            "backend": self.backend,
        }

    async def ping(self) -> bool:
        if self._redis is None:
            return True
        return bool(await self._redis.ping())

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def _counter_key(self, user_key: str, period: str) -> str:
        return f"{self.settings.cache.key_prefix}:ratelimit:{period}:{user_key}"

    async def increment_query_count(self, user_key: str, period: str) -> RateLimitCounter:
        """Add one query to the ``period`` window for ``user_key``.

        Fails open: when the counter store errors the caller sees a zero count.
        """
        window = PERIOD_SECONDS[period]
        per_minute, per_day, _ = self._limits_for(user_key)
        limit = per_minute if period == "minute" else per_day
        key = self._counter_key(user_key, period)
        now = self._clock()

        if self._redis is not None:
            try:
                count = int(await self._redis.incr(key))
                if count == 1:
                    await self._redis.expire(key, window)
                ttl = await self._redis.ttl(key)
                reset_at = now + (ttl if ttl and ttl > 0 else window)
                return RateLimitCounter(count=count, remaining=max(0, limit - count), reset_at=reset_at)
            except Exception as e:
                logger.warning(f"Redis rate-limit increment failed, allowing request: {e}")
                return RateLimitCounter(count=0, remaining=999, reset_at=now + 60)

        state = self._counters.get(key)
        if state is None:
            state = {"count": 0, "start": now}
        state["count"] += 1
        reset_at = state["start"] + window
        self._counters.set(key, state, max(reset_at - now, 0.001))
        return RateLimitCounter(
            count=state["count"], remaining=max(0, limit - state["count"]), reset_at=reset_at
        )

    def _limits_for(self, user_key: str):
        limits = self.settings.rate_limit
        if user_key.startswith("u:"):
            return limits.user_per_minute, limits.user_per_day, False
        return limits.guest_per_minute, limits.guest_per_day, True

    async def check_rate_limit(self, user_key: str) -> RateLimitDecision:
        """Count this query against both windows, then compare the prior count to the limits."""
        per_minute, per_day, is_guest = self._limits_for(user_key)
        minute, day = await asyncio.gather(
            self.increment_query_count(user_key, "minute"),
            self.increment_query_count(user_key, "day"),
        )
        # The increments above already include this request.
        minute_before = minute.count - 1
        day_before = day.count - 1
        now = self._clock()

        if minute_before >= per_minute:
            return RateLimitDecision(
                limited=True,
                message="Too many requests. Please wait a moment.",
                retry_after=max(1, math.ceil(minute.reset_at - now)),
            )
        if day_before >= per_day:
            message = (
                "Daily limit reached. Sign up for more queries!"
                if is_guest
                else "Daily limit reached. Try again tomorrow."
            )
            return RateLimitDecision(
                limited=True,
                message=message,
                retry_after=max(1, math.ceil(day.reset_at - now)),
            )
        return RateLimitDecision(
            limited=False,
            remaining={
                "minute": max(0, per_minute - minute_before - 1),
                "day": max(0, per_day - day_before - 1),
            },
        )

    async def increment_rate_limits(self, user_key: str) -> None:
        """Count a completed turn against both windows."""
        await asyncio.gather(
            self.increment_query_count(user_key, "minute"),
            self.increment_query_count(user_key, "day"),
        )
