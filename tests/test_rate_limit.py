"""Tests for fixed-window rate limiting and its stores."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
import redis

from edge.app.exceptions import RateLimitStoreError
from edge.app.services.rate_limit import (
    COMPARE_AND_SWAP_SCRIPT,
    FixedWindowRateLimiter,
    InMemoryRateLimitStore,
    RateLimitEntry,
    RedisRateLimitStore,
    create_rate_limit_store,
    get_rate_limiter,
)


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return FixedWindowRateLimiter(
        store=InMemoryRateLimitStore(),
        max_requests=10,
        window_ms=60_000,
        clock=clock,
    )


class TestFixedWindowRateLimiter:
    """Tests for the limiter on top of the in-memory store."""

    @pytest.mark.asyncio
    async def test_first_request_opens_window(self, limiter, clock):
        result = await limiter.hit("203.0.113.7")

        assert result.allowed is True
        assert result.limit == 10
        assert result.remaining == 9
        assert result.reset_at == clock.now + 60_000
        assert result.retry_after_ms is None

    @pytest.mark.asyncio
    async def test_eleventh_request_is_rejected(self, limiter):
        for _ in range(10):
            result = await limiter.hit("203.0.113.7")
            assert result.allowed is True

        result = await limiter.hit("203.0.113.7")
        assert result.allowed is False
        assert result.remaining == 0
        assert result.retry_after_ms == 60_000

    @pytest.mark.asyncio
    async def test_window_resets_after_expiry(self, limiter, clock):
        for _ in range(11):
            await limiter.hit("203.0.113.7")

        # Still inside the window at exactly reset time
        clock.advance(60_000)
        assert (await limiter.hit("203.0.113.7")).allowed is False

        clock.advance(1)
        result = await limiter.hit("203.0.113.7")
        assert result.allowed is True
        assert result.remaining == 9

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter):
        for _ in range(11):
            await limiter.hit("key1")

        assert (await limiter.hit("key1")).allowed is False
        assert (await limiter.hit("key2")).allowed is True

    @pytest.mark.asyncio
    async def test_rejected_requests_still_count(self, limiter):
        store = limiter.store
        for _ in range(12):
            await limiter.hit("k")

        entry = await store.get("k")
        assert entry.count == 12

    @pytest.mark.asyncio
    async def test_retries_when_swap_loses_race(self, clock):
        store = InMemoryRateLimitStore()
        limiter = FixedWindowRateLimiter(store=store, clock=clock)
        original = store.compare_and_swap_window
        calls = {"n": 0}

        async def flaky_swap(key, expected, new):
            calls["n"] += 1
            if calls["n"] == 1:
                # Another writer sneaks in between read and swap
                await store.set(key, RateLimitEntry(count=5, window_reset_at=clock.now + 60_000))
                return await original(key, expected, new)
            return await original(key, expected, new)

        store.compare_and_swap_window = flaky_swap
        result = await limiter.hit("k")

        assert calls["n"] == 2
        assert (await store.get("k")).count == 6
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_fail_open_when_store_unavailable(self, clock):
        store = AsyncMock()
        store.get.side_effect = RateLimitStoreError("down")
        limiter = FixedWindowRateLimiter(store=store, clock=clock)

        result = await limiter.hit("k")
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_fail_closed_when_configured(self, clock):
        store = AsyncMock()
        store.get.side_effect = RateLimitStoreError("down")
        limiter = FixedWindowRateLimiter(store=store, clock=clock, fail_closed=True)

        result = await limiter.hit("k")
        assert result.allowed is False
        assert result.retry_after_ms == 60_000

    @pytest.mark.asyncio
    async def test_denies_under_permanent_contention(self, clock):
        store = AsyncMock()
        store.get.return_value = None
        store.compare_and_swap_window.return_value = False
        # Fail-open only covers an unavailable store, not a busy key
        limiter = FixedWindowRateLimiter(store=store, clock=clock)

        result = await limiter.hit("k")
        assert result.allowed is False
        assert result.retry_after_ms == 60_000
        assert store.compare_and_swap_window.await_count == FixedWindowRateLimiter.MAX_SWAP_ATTEMPTS

    @pytest.mark.asyncio
    async def test_concurrent_burst_never_exceeds_limit(self, clock):
        class YieldingStore(InMemoryRateLimitStore):
            """Suspends on every call, like a network-backed store."""

            async def get(self, key):
                await asyncio.sleep(0)
                return await super().get(key)

            async def compare_and_swap_window(self, key, expected, new):
                await asyncio.sleep(0)
                return await super().compare_and_swap_window(key, expected, new)

        store = YieldingStore()
        limiter = FixedWindowRateLimiter(store=store, max_requests=10, clock=clock)

        results = await asyncio.gather(*(limiter.hit("198.51.100.9") for _ in range(50)))

        allowed = sum(r.allowed for r in results)
        assert 1 <= allowed <= 10
        assert all(r.retry_after_ms == 60_000 for r in results if not r.allowed)

        # Uncontended requests in the same window top up to exactly the limit
        for _ in range(10):
            allowed += (await limiter.hit("198.51.100.9")).allowed
        assert allowed == 10


class TestInMemoryRateLimitStore:

    @pytest.mark.asyncio
    async def test_swap_from_absent(self):
        store = InMemoryRateLimitStore()
        entry = RateLimitEntry(count=1, window_reset_at=100)

        assert await store.compare_and_swap_window("k", None, entry) is True
        assert await store.get("k") == entry
        # Key exists now, a second "create" must lose
        assert await store.compare_and_swap_window("k", None, entry) is False

    @pytest.mark.asyncio
    async def test_swap_rejects_stale_expected(self):
        store = InMemoryRateLimitStore()
        await store.set("k", RateLimitEntry(count=3, window_reset_at=100))

        stale = RateLimitEntry(count=2, window_reset_at=100)
        assert await store.compare_and_swap_window("k", stale, RateLimitEntry(3, 100)) is False
        assert (await store.get("k")).count == 3
        assert len(store) == 1


class TestRedisRateLimitStore:
    """Tests for the Redis store with a mocked client."""

    @pytest.mark.asyncio
    async def test_get_decodes_entry(self):
        client = AsyncMock()
        client.get.return_value = b'{"count":4,"window_reset_at":1234}'
        store = RedisRateLimitStore(redis_client=client, key_prefix="t")

        entry = await store.get("198.51.100.1")

        client.get.assert_awaited_once_with("t:198.51.100.1")
        assert entry == RateLimitEntry(count=4, window_reset_at=1234)

    @pytest.mark.asyncio
    async def test_get_missing_key(self):
        client = AsyncMock()
        client.get.return_value = None
        store = RedisRateLimitStore(redis_client=client)

        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_set_uses_window_ttl(self):
        client = AsyncMock()
        store = RedisRateLimitStore(redis_client=client, key_prefix="t", ttl_ms=60_000)

        await store.set("k", RateLimitEntry(count=1, window_reset_at=5))

        client.set.assert_awaited_once_with(
            "t:k", '{"count":1,"window_reset_at":5}', px=60_000
        )

    @pytest.mark.asyncio
    async def test_compare_and_swap_runs_lua_script(self):
        client = AsyncMock()
        client.eval.return_value = 1
        store = RedisRateLimitStore(redis_client=client, key_prefix="t", ttl_ms=60_000)

        swapped = await store.compare_and_swap_window(
            "k", None, RateLimitEntry(count=1, window_reset_at=7)
        )

        assert swapped is True
        args = client.eval.await_args.args
        assert args[0] == COMPARE_AND_SWAP_SCRIPT
        assert args[1:4] == (1, "t:k", "")
        assert json.loads(args[4]) == {"count": 1, "window_reset_at": 7}
        assert args[5] == 60_000

    @pytest.mark.asyncio
    async def test_compare_and_swap_conflict(self):
        client = AsyncMock()
        client.eval.return_value = 0
        store = RedisRateLimitStore(redis_client=client)

        swapped = await store.compare_and_swap_window(
            "k", RateLimitEntry(1, 7), RateLimitEntry(2, 7)
        )
        assert swapped is False

    @pytest.mark.asyncio
    async def test_redis_errors_are_wrapped(self):
        client = AsyncMock()
        client.get.side_effect = redis.ConnectionError("refused")
        store = RedisRateLimitStore(redis_client=client)

        with pytest.raises(RateLimitStoreError):
            await store.get("k")

    @pytest.mark.asyncio
    async def test_limiter_fails_open_on_redis_outage(self):
        client = AsyncMock()
        client.get.side_effect = redis.TimeoutError("slow")
        limiter = FixedWindowRateLimiter(store=RedisRateLimitStore(redis_client=client))

        assert (await limiter.hit("k")).allowed is True

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        client = AsyncMock()
        store = RedisRateLimitStore(redis_client=client)

        await store.close()
        client.aclose.assert_awaited_once()


class TestStoreSelection:

    def test_memory_by_default(self):
        assert isinstance(create_rate_limit_store("memory"), InMemoryRateLimitStore)

    def test_redis_when_selected(self):
        with patch("edge.app.services.rate_limit.settings") as mock_settings:
            mock_settings.rate_limit_backend = "redis"
            mock_settings.redis_url = "redis://localhost:6379/0"
            mock_settings.rate_limit_key_prefix = "edge:ratelimit"
            mock_settings.rate_limit_window_ms = 60_000

            store = create_rate_limit_store()
            assert isinstance(store, RedisRateLimitStore)

    def test_global_limiter_is_singleton(self):
        assert get_rate_limiter() is get_rate_limiter()
