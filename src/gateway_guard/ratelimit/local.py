"""In-process fallback used while the shared counter store is unreachable.

The local store keys counters exactly like the shared store and the
fallback limiter builds decisions with the same functions as the shared
limiters, so a single process sees identical allow/deny sequences on both
paths. The fallback only protects the process it runs in.
"""

import asyncio
import logging
import threading
from collections.abc import Callable

from gateway_guard.config import Settings, get_settings
from gateway_guard.ratelimit.algorithms import (
    bucket_decision,
    now_ms,
    refill_tokens,
    window_decision,
    window_ttl_seconds,
)
from gateway_guard.ratelimit.models import (
    BucketResult,
    BucketState,
    Counter,
    RateLimitDecision,
    RateLimitKey,
)
from gateway_guard.ratelimit.store import CounterStore

logger = logging.getLogger(__name__)


class _Shard:
    """One lock-protected slice of the local store."""

    __slots__ = ("lock", "counters", "buckets")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.counters: dict[str, Counter] = {}
        self.buckets: dict[str, BucketState] = {}


class LocalCounterStore(CounterStore):
    """Process-local counter store.

    Keys are spread over independently locked shards so concurrent tasks
    (or threads) touching different keys do not contend, while updates to
    one key are serialized.
    """

    SHARD_COUNT = 16

    def __init__(
        self,
        clock: Callable[[], int] | None = None,
        shard_count: int = SHARD_COUNT,
    ) -> None:
        """Initialize the store.

        Args:
            clock: Time source in epoch milliseconds, used for expiry.
            shard_count: Number of lock shards.
        """
        self._clock = clock if clock is not None else now_ms
        self._shards = [_Shard() for _ in range(shard_count)]

    def _shard(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    async def increment(self, key: str, ttl_seconds: int, amount: int = 1) -> int:
        now = self._clock()
        shard = self._shard(key)
        with shard.lock:
            counter = shard.counters.get(key)
            if counter is None or counter.expires_at <= now:
                counter = Counter(count=0, expires_at=now)
                shard.counters[key] = counter
            counter.count += amount
            counter.expires_at = now + ttl_seconds * 1000
            return counter.count

    async def consume_tokens(
        self,
        key: str,
        capacity: float,
        refill_rate: float,
        tokens_requested: int,
        now: int,
        ttl_seconds: int,
    ) -> BucketResult:
        expiry_now = self._clock()
        shard = self._shard(key)
        with shard.lock:
            state = shard.buckets.get(key)
            if state is None or state.expires_at <= expiry_now:
                state = BucketState(
                    tokens=capacity,
                    last_refill_at=now,
                    capacity=capacity,
                    refill_rate=refill_rate,
                    expires_at=expiry_now,
                )
                shard.buckets[key] = state

            tokens = refill_tokens(
                state.tokens, state.last_refill_at, now, capacity, refill_rate
            )
            allowed = tokens >= tokens_requested
            if allowed:
                tokens -= tokens_requested

            state.tokens = tokens
            state.last_refill_at = max(now, state.last_refill_at)
            state.capacity = capacity
            state.refill_rate = refill_rate
            state.expires_at = expiry_now + ttl_seconds * 1000
            return BucketResult(
                allowed=allowed,
                tokens_remaining=tokens,
                last_refill_at=state.last_refill_at,
            )

    async def get_count(self, key: str) -> int:
        now = self._clock()
        shard = self._shard(key)
        with shard.lock:
            counter = shard.counters.get(key)
            if counter is None or counter.expires_at <= now:
                return 0
            return counter.count

    async def is_available(self) -> bool:
        return True

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        for shard in self._shards:
            with shard.lock:
                for entries in (shard.counters, shard.buckets):
                    for key in [k for k in entries if k.startswith(prefix)]:
                        del entries[key]
                        deleted += 1
        return deleted

    def sweep(self) -> int:
        """Drop expired counters and idle buckets.

        Returns:
            Number of removed entries.
        """
        now = self._clock()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                for entries in (shard.counters, shard.buckets):
                    for key in [k for k, v in entries.items() if v.expires_at <= now]:
                        del entries[key]
                        removed += 1
        return removed

    def entry_count(self) -> int:
        """Number of live or not yet swept entries."""
        return sum(len(s.counters) + len(s.buckets) for s in self._shards)


class FallbackSweeper:
    """Background task that periodically sweeps the local store.

    Runs on a fixed interval so request handling never pays for cleanup.
    """

    def __init__(self, store: LocalCounterStore, interval_seconds: float) -> None:
        self._store = store
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None
        self._running = False

    async def _run(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                removed = self._store.sweep()
                if removed:
                    logger.debug("Swept %d expired fallback entries", removed)
            except Exception as e:
                logger.exception("Fallback sweep failed: %s", e)

    async def start(self) -> None:
        """Start the sweep task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="rate_limit_fallback_sweep")
        logger.info("Fallback sweeper started with interval=%.1fs", self._interval)

    async def stop(self) -> None:
        """Stop the sweep task."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Fallback sweeper stopped")

    @property
    def is_running(self) -> bool:
        """Check if the sweeper is running."""
        return self._running


class LocalFallbackLimiter:
    """Window and bucket checks against the local store."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: LocalCounterStore | None = None,
    ) -> None:
        """Initialize the fallback limiter.

        Args:
            settings: Application settings.
            store: Local store (a fresh one if not provided).
        """
        self._settings = settings or get_settings()
        self.store = store if store is not None else LocalCounterStore()
        self._prefix = self._settings.rate_limit_key_prefix
        self._sweeper = FallbackSweeper(
            self.store, self._settings.rate_limit_fallback_sweep_interval_seconds
        )

    async def check_window(
        self, key: RateLimitKey, limit: int, now: int
    ) -> RateLimitDecision:
        """Count a request in a fixed window.

        Args:
            key: Window key (subject or global scope).
            limit: Effective limit for the window.
            now: Current time in epoch milliseconds.

        Returns:
            The decision for this request.
        """
        if key.window_ms is None or key.window_index is None:
            raise ValueError(f"Not a window key: {key}")
        count = await self.store.increment(
            key.render(self._prefix), window_ttl_seconds(key.window_ms)
        )
        return window_decision(count, limit, key.window_index, key.window_ms, now)

    async def check_bucket(
        self,
        key: RateLimitKey,
        capacity: float,
        refill_rate: float,
        tokens_requested: int,
        now: int,
    ) -> RateLimitDecision:
        """Refill and consume from a token bucket.

        Args:
            key: Bucket key.
            capacity: Effective bucket capacity.
            refill_rate: Tokens per second.
            tokens_requested: Tokens this request consumes.
            now: Current time in epoch milliseconds.

        Returns:
            The decision for this request.
        """
        result = await self.store.consume_tokens(
            key.render(self._prefix),
            capacity,
            refill_rate,
            tokens_requested,
            now,
            self._settings.rate_limit_bucket_ttl_seconds,
        )
        return bucket_decision(result, capacity, refill_rate, now)

    async def reset(self, prefix: str) -> int:
        """Clear local entries starting with ``prefix``."""
        return await self.store.delete_prefix(prefix)

    async def start(self) -> None:
        await self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()
