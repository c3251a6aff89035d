"""Shared counter store backed by Redis."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from gateway_guard.config import Settings, get_settings
from gateway_guard.ratelimit.exceptions import StoreTimeoutError, StoreUnavailableError
from gateway_guard.ratelimit.models import BucketResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Atomic refill-and-consume. Mirrors algorithms.refill_tokens; tokens and
# timestamps are returned as strings because Redis truncates Lua numbers
# to integers.
TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local requested = tonumber(ARGV[3])
local now = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local bucket = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens = tonumber(bucket[1]) or capacity
local last_refill = tonumber(bucket[2]) or now

local elapsed = math.max(0, now - last_refill) / 1000
tokens = math.min(capacity, tokens + math.floor(elapsed * refill_rate))
if now > last_refill then
    last_refill = now
end

local allowed = 0
if tokens >= requested then
    tokens = tokens - requested
    allowed = 1
end

redis.call('HSET', key, 'tokens', tostring(tokens), 'last_refill', tostring(last_refill))
redis.call('EXPIRE', key, ttl)
return {allowed, tostring(tokens), tostring(last_refill)}
"""


class CounterStore(ABC):
    """Key-value store holding rate limit counters and buckets.

    Implementations must make ``increment`` and ``consume_tokens`` atomic
    per key, and report connectivity problems as ``StoreUnavailableError``.
    """

    @abstractmethod
    async def increment(self, key: str, ttl_seconds: int, amount: int = 1) -> int:
        """Increment a counter by ``amount`` and (re)arm its expiry.

        Returns:
            Counter value after the increment.
        """

    @abstractmethod
    async def consume_tokens(
        self,
        key: str,
        capacity: float,
        refill_rate: float,
        tokens_requested: int,
        now: int,
        ttl_seconds: int,
    ) -> BucketResult:
        """Refill a bucket and try to take tokens from it in one step."""

    @abstractmethod
    async def get_count(self, key: str) -> int:
        """Read a counter without changing it (0 if absent)."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the store is currently usable."""

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``.

        Returns:
            Number of deleted keys.
        """

    async def close(self) -> None:
        """Release store resources."""


class RedisCounterStore(CounterStore):
    """Counter store shared by all service instances through Redis.

    Every call is bounded by ``rate_limit_store_timeout_ms``. Failures mark
    the store unavailable until the next liveness check, so a Redis outage
    costs one timeout per check interval rather than one per request.
    """

    ADMIN_TIMEOUT_SECONDS = 5.0
    SCAN_BATCH = 100

    def __init__(
        self,
        settings: Settings | None = None,
        client: redis.Redis | None = None,
    ):
        """Initialize the store.

        Args:
            settings: Application settings.
            client: Pre-built Redis client (created lazily from settings otherwise).
        """
        self._settings = settings or get_settings()
        self._redis: redis.Redis | None = client
        self._lock = asyncio.Lock()
        self._ping_lock = asyncio.Lock()
        self._timeout = self._settings.rate_limit_store_timeout_ms / 1000
        self._bucket_script: Any = None
        self._available: bool | None = None
        self._checked_at = 0.0

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection.

        Returns:
            Redis client.
        """
        if self._redis is None:
            async with self._lock:
                if self._redis is None:
                    self._redis = redis.from_url(  # type: ignore[no-untyped-call]
                        self._settings.redis_url,
                        encoding="utf-8",
                        decode_responses=True,
                        socket_connect_timeout=self._timeout,
                        socket_timeout=self._timeout,
                    )
        return self._redis

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._bucket_script = None

    def _set_available(self, available: bool) -> None:
        if available != self._available:
            if available:
                logger.info("Shared counter store is available")
            else:
                logger.warning(
                    "Shared counter store unavailable, using local fallback"
                )
        self._available = available
        self._checked_at = time.monotonic()

    async def _execute(
        self,
        operation: str,
        call: Callable[[redis.Redis], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run one store call with a time budget and error translation."""
        timeout = timeout or self._timeout
        try:
            r = await self._get_redis()
            return await asyncio.wait_for(call(r), timeout=timeout)
        except (asyncio.TimeoutError, RedisTimeoutError) as e:
            self._set_available(False)
            raise StoreTimeoutError(
                f"Redis {operation} timed out after {timeout * 1000:.0f} ms"
            ) from e
        except (RedisError, OSError) as e:
            self._set_available(False)
            raise StoreUnavailableError(f"Redis {operation} failed: {e}") from e

    async def increment(self, key: str, ttl_seconds: int, amount: int = 1) -> int:
        async def _incr(r: redis.Redis) -> int:
            # MULTI/EXEC keeps INCR and EXPIRE in one atomic round trip
            pipe = r.pipeline(transaction=True)
            pipe.incr(key, amount)
            pipe.expire(key, ttl_seconds)
            results = await pipe.execute()
            return int(results[0])

        return await self._execute("increment", _incr)

    async def consume_tokens(
        self,
        key: str,
        capacity: float,
        refill_rate: float,
        tokens_requested: int,
        now: int,
        ttl_seconds: int,
    ) -> BucketResult:
        async def _consume(r: redis.Redis) -> BucketResult:
            if self._bucket_script is None:
                self._bucket_script = r.register_script(TOKEN_BUCKET_SCRIPT)
            allowed, tokens, last_refill = await self._bucket_script(
                keys=[key],
                args=[capacity, refill_rate, tokens_requested, now, ttl_seconds],
            )
            return BucketResult(
                allowed=int(allowed) == 1,
                tokens_remaining=float(tokens),
                last_refill_at=int(float(last_refill)),
            )

        return await self._execute("token bucket", _consume)

    async def get_count(self, key: str) -> int:
        async def _get(r: redis.Redis) -> int:
            return int(await r.get(key) or 0)

        return await self._execute("get", _get)

    def _cached_availability(self) -> bool | None:
        cache_seconds = self._settings.rate_limit_availability_cache_seconds
        if (
            self._available is not None
            and time.monotonic() - self._checked_at < cache_seconds
        ):
            return self._available
        return None

    async def is_available(self) -> bool:
        cached = self._cached_availability()
        if cached is not None:
            return cached

        # One ping at a time; waiters reuse its result
        async with self._ping_lock:
            cached = self._cached_availability()
            if cached is not None:
                return cached

            try:
                await self._execute("ping", lambda r: r.ping())
            except StoreUnavailableError as e:
                logger.debug("Shared counter store ping failed: %s", e)
                return False

            self._set_available(True)
            return True

    async def delete_prefix(self, prefix: str) -> int:
        async def _delete(r: redis.Redis) -> int:
            deleted = 0
            cursor = 0
            while True:
                cursor, keys = await r.scan(
                    cursor, match=f"{prefix}*", count=self.SCAN_BATCH
                )
                if keys:
                    deleted += int(await r.delete(*keys))
                if cursor == 0:
                    break
            return deleted

        return await self._execute(
            "delete", _delete, timeout=self.ADMIN_TIMEOUT_SECONDS
        )
