"""Unit tests for the response cache and rate limiter."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from deals_assistant.services.cache_service import CacheService, MemoryCache


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(settings, clock):
    return CacheService(settings, clock=clock)


class TestMemoryCache:
    """Test the bounded in-process tier."""

    def test_expiry_is_lazy(self, clock):
        memory = MemoryCache(max_entries=10, clock=clock)
        memory.set("k", "v", ttl=5)
        assert memory.get("k") == "v"
        clock.advance(5)
        assert memory.get("k") is None
        assert len(memory) == 0

    def test_oldest_entry_evicted_at_capacity(self, clock):
        memory = MemoryCache(max_entries=2, clock=clock)
        memory.set("a", 1, ttl=60)
        memory.set("b", 2, ttl=60)
        memory.set("c", 3, ttl=60)
        assert memory.get("a") is None
        assert memory.get("b") == 2
        assert memory.get("c") == 3

    def test_hit_refreshes_recency(self, clock):
        memory = MemoryCache(max_entries=2, clock=clock)
        memory.set("a", 1, ttl=60)
        memory.set("b", 2, ttl=60)
        memory.get("a")
        memory.set("c", 3, ttl=60)
        assert memory.get("a") == 1
        assert memory.get("b") is None

    def test_expired_entries_go_before_live_ones(self, clock):
        memory = MemoryCache(max_entries=2, clock=clock)
        memory.set("long", 1, ttl=100)
        memory.set("short", 2, ttl=10)
        clock.advance(20)
        memory.set("new", 3, ttl=60)
        assert memory.get("long") == 1
        assert memory.get("new") == 3
        assert len(memory) == 2


class TestResponseCache:
    """Test exact-match response caching."""

    def test_key_is_normalized(self, cache):
        assert cache.make_key("exact", "  Laptop Deals ") == cache.make_key("exact", "laptop deals")
        key = cache.make_key("exact", "laptop deals")
        prefix, cache_type, digest = key.split(":")
        assert (prefix, cache_type, len(digest)) == ("ai", "exact", 32)

    @pytest.mark.asyncio
    async def test_round_trip_and_ttl(self, cache, clock, settings):
        payload = {"success": True, "content": "Here you go", "deals": [{"id": 1, "price": 450}]}
        await cache.set_response("Find Laptop Deals", payload)

        assert await cache.get_response("  find laptop deals ") == payload

        clock.advance(settings.cache.exact_ttl)
        assert await cache.get_response("find laptop deals") is None

    @pytest.mark.asyncio
    async def test_disabled_cache_is_a_no_op(self, cache, settings):
        settings.features.caching_enabled = False
        await cache.set_response("q", {"content": "x"})
        assert await cache.get_response("q") is None
        assert cache.stats()["sets"] == 0

    @pytest.mark.asyncio
    async def test_invalidate(self, cache):
        await cache.set_response("q", {"content": "x"})
        await cache.invalidate("exact", "q")
        assert await cache.get_response("q") is None

    @pytest.mark.asyncio
    async def test_tool_results_use_tool_ttl(self, cache, clock, settings):
        args = {"query": "tv", "sort_by": "popular"}
        await cache.set_tool_result("search_deals", args, {"kind": "search_deals", "deals": []})

        assert await cache.get_tool_result("search_deals", dict(reversed(list(args.items()))))
        clock.advance(settings.cache.tool_ttl)
        assert await cache.get_tool_result("search_deals", args) is None

    @pytest.mark.asyncio
    async def test_stats(self, cache):
        await cache.set_response("q", {"content": "x"})
        await cache.get_response("q")
        await cache.get_response("missing")

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["sets"] == 1
        assert stats["hitRate"] == "50.0%"
        assert stats["backend"] == "memory"


class TestRedisTier:
    """Test the distributed tier and its degradation to memory."""

    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        client.get = AsyncMock(return_value=None)
        client.set = AsyncMock()
        client.delete = AsyncMock()
        client.incr = AsyncMock(return_value=1)
        client.expire = AsyncMock()
        client.ttl = AsyncMock(return_value=60)
        client.ping = AsyncMock(return_value=True)
        return client

    @pytest.mark.asyncio
    async def test_writes_go_to_redis_with_ttl(self, settings, clock, redis_client):
        cache = CacheService(settings, redis_client=redis_client, clock=clock)
        await cache.set_response("q", {"content": "x"})

        key = cache.make_key("exact", "q")
        redis_client.set.assert_awaited_once_with(key, '{"content": "x"}', ex=settings.cache.exact_ttl)
        assert cache.backend == "redis"

    @pytest.mark.asyncio
    async def test_read_failure_falls_back_to_memory(self, settings, clock, redis_client):
        cache = CacheService(settings, redis_client=redis_client, clock=clock)
        await cache.set_response("q", {"content": "x"})
        redis_client.get.side_effect = RedisConnectionError("down")

        assert await cache.get_response("q") == {"content": "x"}

    @pytest.mark.asyncio
    async def test_counter_sets_expiry_on_first_increment(self, settings, clock, redis_client):
        cache = CacheService(settings, redis_client=redis_client, clock=clock)
        counter = await cache.increment_query_count("ip:1.2.3.4", "minute")

        assert counter.count == 1
        assert counter.remaining == settings.rate_limit.guest_per_minute - 1
        redis_client.expire.assert_awaited_once_with("ai:ratelimit:minute:ip:1.2.3.4", 60)

    @pytest.mark.asyncio
    async def test_counter_failure_fails_open(self, settings, clock, redis_client):
        redis_client.incr.side_effect = RedisConnectionError("down")
        cache = CacheService(settings, redis_client=redis_client, clock=clock)

        decision = await cache.check_rate_limit("ip:1.2.3.4")
        assert decision.limited is False


class TestRateLimit:
    """Test per-identity minute/day limits."""

    @pytest.mark.asyncio
    async def test_guest_minute_boundary(self, cache):
        decisions = [await cache.check_rate_limit("ip:10.0.0.1") for _ in range(11)]

        assert decisions[9].limited is False
        assert decisions[10].limited is True
        assert decisions[10].retry_after == 60
        assert decisions[10].message == "Too many requests. Please wait a moment."

    @pytest.mark.asyncio
    async def test_counters_survive_a_full_response_cache(self, settings, clock):
        settings.cache.memory_max_entries = 2
        settings.rate_limit.guest_per_minute = 1
        cache = CacheService(settings, clock=clock)

        assert (await cache.check_rate_limit("ip:10.0.0.1")).limited is False
        for n in range(2, 50):
            await cache.check_rate_limit(f"ip:10.0.0.{n}")

        assert (await cache.check_rate_limit("ip:10.0.0.1")).limited is True

    @pytest.mark.asyncio
    async def test_full_counter_store_drops_expired_windows_first(self, settings, clock):
        settings.rate_limit.memory_max_keys = 2
        cache = CacheService(settings, clock=clock)

        await cache.increment_query_count("ip:10.0.0.1", "day")
        await cache.increment_query_count("ip:10.0.0.2", "minute")
        clock.advance(120)
        await cache.increment_query_count("ip:10.0.0.3", "minute")

        counter = await cache.increment_query_count("ip:10.0.0.1", "day")
        assert counter.count == 2

    @pytest.mark.asyncio
    async def test_authenticated_limit_is_higher(self, cache):
        for _ in range(10):
            await cache.check_rate_limit("ip:10.0.0.1")
        for _ in range(10):
            await cache.check_rate_limit("u:user-1")

        assert (await cache.check_rate_limit("ip:10.0.0.1")).limited is True
        assert (await cache.check_rate_limit("u:user-1")).limited is False

    @pytest.mark.asyncio
    async def test_one_increment_per_window_per_check(self, cache):
        await cache.check_rate_limit("ip:10.0.0.2")
        await cache.check_rate_limit("ip:10.0.0.2")

        minute = await cache.increment_query_count("ip:10.0.0.2", "minute")
        day = await cache.increment_query_count("ip:10.0.0.2", "day")
        assert minute.count == 3
        assert day.count == 3

    @pytest.mark.asyncio
    async def test_minute_window_resets(self, cache, clock):
        for _ in range(11):
            await cache.check_rate_limit("ip:10.0.0.3")
        clock.advance(60)
        assert (await cache.check_rate_limit("ip:10.0.0.3")).limited is False

    @pytest.mark.asyncio
    async def test_guest_daily_limit_message(self, cache, settings):
        settings.rate_limit.guest_per_day = 2
        decisions = [await cache.check_rate_limit("ip:10.0.0.4") for _ in range(3)]

        assert [d.limited for d in decisions] == [False, False, True]
        assert decisions[2].message == "Daily limit reached. Sign up for more queries!"

    @pytest.mark.asyncio
    async def test_remaining(self, cache, settings):
        decision = await cache.check_rate_limit("u:user-2")
        assert decision.remaining == {
            "minute": settings.rate_limit.user_per_minute - 1,
            "day": settings.rate_limit.user_per_day - 1,
        }

    @pytest.mark.asyncio
    async def test_increment_rate_limits_counts_both_windows(self, cache):
        await cache.increment_rate_limits("u:user-3")
        minute = await cache.increment_query_count("u:user-3", "minute")
        day = await cache.increment_query_count("u:user-3", "day")
        assert (minute.count, day.count) == (2, 2)
