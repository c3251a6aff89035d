"""Tests for the in-process fallback store and limiter."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from gateway_guard.ratelimit.local import (
    FallbackSweeper,
    LocalCounterStore,
    LocalFallbackLimiter,
)
from gateway_guard.ratelimit.models import RateLimitKey


class TestLocalCounterStore:
    """Tests for LocalCounterStore."""

    @pytest.mark.asyncio
    async def test_increment_counts_up(self, clock):
        store = LocalCounterStore(clock=clock)

        assert await store.increment("k", 60) == 1
        assert await store.increment("k", 60) == 2
        assert await store.get_count("k") == 2

    @pytest.mark.asyncio
    async def test_counter_expires(self, clock):
        store = LocalCounterStore(clock=clock)
        await store.increment("k", 1)
        await store.increment("k", 1)

        clock.advance(1_000)

        assert await store.get_count("k") == 0
        assert await store.increment("k", 1) == 1

    @pytest.mark.asyncio
    async def test_consume_tokens_until_empty(self, clock):
        store = LocalCounterStore(clock=clock)

        results = [
            await store.consume_tokens("b", 3, 1.0, 1, clock(), 3600) for _ in range(4)
        ]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert results[2].tokens_remaining == 0
        assert results[3].last_refill_at == clock()

    @pytest.mark.asyncio
    async def test_consume_tokens_refills_over_time(self, clock):
        store = LocalCounterStore(clock=clock)
        for _ in range(3):
            await store.consume_tokens("b", 3, 1.0, 1, clock(), 3600)

        clock.advance(2_000)
        result = await store.consume_tokens("b", 3, 1.0, 1, clock(), 3600)

        assert result.allowed
        assert result.tokens_remaining == 1

    @pytest.mark.asyncio
    async def test_last_refill_never_moves_backwards(self, clock):
        store = LocalCounterStore(clock=clock)
        await store.consume_tokens("b", 3, 1.0, 1, clock.now, 3600)

        result = await store.consume_tokens("b", 3, 1.0, 1, clock.now - 5_000, 3600)

        assert result.last_refill_at == clock.now

    @pytest.mark.asyncio
    async def test_delete_prefix(self, clock):
        store = LocalCounterStore(clock=clock)
        await store.increment("rl:subject:u1:op:60000:1", 60)
        await store.consume_tokens("rl:subject:u1:op:bucket", 3, 1.0, 1, clock(), 60)
        await store.increment("rl:subject:u2:op:60000:1", 60)

        deleted = await store.delete_prefix("rl:subject:u1:op:")

        assert deleted == 2
        assert store.entry_count() == 1

    @pytest.mark.asyncio
    async def test_sweep_removes_expired_entries(self, clock):
        store = LocalCounterStore(clock=clock)
        await store.increment("short", 1)
        await store.increment("long", 60)
        await store.consume_tokens("bucket", 3, 1.0, 1, clock(), 1)

        clock.advance(1_000)
        removed = store.sweep()

        assert removed == 2
        assert store.entry_count() == 1

    @pytest.mark.asyncio
    async def test_always_available(self):
        assert await LocalCounterStore().is_available() is True

    def test_increment_is_atomic_across_threads(self):
        """Test that concurrent increments from threads are not lost."""
        store = LocalCounterStore()

        def bump(_):
            return asyncio.run(store.increment("k", 60))

        with ThreadPoolExecutor(max_workers=8) as pool:
            counts = list(pool.map(bump, range(200)))

        assert sorted(counts) == list(range(1, 201))


class TestFallbackSweeper:
    """Tests for the background sweeper."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock):
        store = LocalCounterStore(clock=clock)
        sweeper = FallbackSweeper(store, interval_seconds=0.01)

        await sweeper.start()
        assert sweeper.is_running

        await sweeper.stop()
        assert not sweeper.is_running

    @pytest.mark.asyncio
    async def test_sweeps_without_traffic(self, clock):
        store = LocalCounterStore(clock=clock)
        await store.increment("k", 1)
        clock.advance(5_000)
        sweeper = FallbackSweeper(store, interval_seconds=0.01)

        await sweeper.start()
        try:
            await asyncio.sleep(0.1)
        finally:
            await sweeper.stop()

        assert store.entry_count() == 0

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, clock):
        sweeper = FallbackSweeper(LocalCounterStore(clock=clock), interval_seconds=10)

        await sweeper.start()
        task = sweeper._task
        await sweeper.start()

        assert sweeper._task is task
        await sweeper.stop()


class TestLocalFallbackLimiter:
    """Tests for LocalFallbackLimiter."""

    @pytest.mark.asyncio
    async def test_check_window(self, test_settings, clock):
        limiter = LocalFallbackLimiter(test_settings, LocalCounterStore(clock=clock))
        key = RateLimitKey.window("u1", "op", 60_000, clock() // 60_000)

        decisions = [await limiter.check_window(key, 2, clock()) for _ in range(3)]

        assert [d.allowed for d in decisions] == [True, True, False]
        assert decisions[2].retry_after == 60

    @pytest.mark.asyncio
    async def test_check_window_rejects_bucket_key(self, test_settings, clock):
        limiter = LocalFallbackLimiter(test_settings, LocalCounterStore(clock=clock))

        with pytest.raises(ValueError):
            await limiter.check_window(RateLimitKey.bucket("u1", "op"), 2, clock())

    @pytest.mark.asyncio
    async def test_check_bucket(self, test_settings, clock):
        limiter = LocalFallbackLimiter(test_settings, LocalCounterStore(clock=clock))
        key = RateLimitKey.bucket("u1", "op")

        first = await limiter.check_bucket(key, 1, 1.0, 1, clock())
        second = await limiter.check_bucket(key, 1, 1.0, 1, clock())

        assert first.allowed
        assert not second.allowed
        assert second.retry_after == 1

    @pytest.mark.asyncio
    async def test_reset(self, test_settings, clock):
        limiter = LocalFallbackLimiter(test_settings, LocalCounterStore(clock=clock))
        key = RateLimitKey.window("u1", "op", 60_000, 0)
        await limiter.check_window(key, 2, clock())

        assert await limiter.reset("rl:subject:u1:op:") == 1
        assert limiter.store.entry_count() == 0
