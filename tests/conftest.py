"""Pytest configuration and fixtures."""

import asyncio
import os

import pytest

# Set test environment variables before importing application modules
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["RATE_LIMIT_ENABLED"] = "true"
os.environ["OTEL_ENABLED"] = "false"
os.environ["ADMIN_API_KEY"] = ""
os.environ["DEBUG"] = "true"

# Midnight UTC, so every window size starts exactly here
DAY_ALIGNED_MS = 1_699_920_000_000


class FakeClock:
    """Deterministic epoch-millisecond clock."""

    def __init__(self, now: int = DAY_ALIGNED_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakePipeline:
    """MULTI/EXEC pipeline over FakeRedis supporting INCR and EXPIRE."""

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._commands: list[tuple] = []

    def incr(self, key, amount=1):
        self._commands.append(("incr", key, amount))
        return self

    def expire(self, key, ttl):
        self._commands.append(("expire", key, ttl))
        return self

    async def execute(self):
        # Yield first so concurrent callers interleave before the transaction
        await asyncio.sleep(0)
        results = []
        for command in self._commands:
            if command[0] == "incr":
                value = int(self._redis.data.get(command[1], 0)) + command[2]
                self._redis.data[command[1]] = value
                results.append(value)
            else:
                self._redis.ttls[command[1]] = command[2]
                results.append(True)
        self._commands = []
        return results


class FakeRedis:
    """In-memory stand-in for the parts of redis.asyncio.Redis used by counters."""

    def __init__(self):
        self.data: dict[str, int] = {}
        self.ttls: dict[str, int] = {}
        self.closed = False

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def ping(self):
        return True

    async def get(self, key):
        value = self.data.get(key)
        return None if value is None else str(value)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def test_settings():
    """Provide test settings."""
    from gateway_guard.config import Settings

    return Settings(
        redis_url="redis://localhost:6379/15",
        rate_limit_enabled=True,
        rate_limit_store_timeout_ms=50,
        rate_limit_availability_cache_seconds=5.0,
        rate_limit_fallback_sweep_interval_seconds=60.0,
        debug=True,
    )


@pytest.fixture
def clock():
    """Provide a fake clock at a day boundary."""
    return FakeClock()


@pytest.fixture
def fake_redis():
    """Provide an in-memory Redis stand-in."""
    return FakeRedis()


@pytest.fixture
def make_service(test_settings, clock):
    """Build a RateLimitService over in-process stores and the fake clock."""
    from gateway_guard.ratelimit.local import LocalCounterStore, LocalFallbackLimiter
    from gateway_guard.ratelimit.service import RateLimitService

    def _make(settings=None, store=None, fallback=None, policies=None, quotas=None, monitor=None):
        settings = settings or test_settings
        return RateLimitService(
            settings=settings,
            store=store if store is not None else LocalCounterStore(clock=clock),
            fallback=fallback
            if fallback is not None
            else LocalFallbackLimiter(settings, LocalCounterStore(clock=clock)),
            policies=policies,
            clock=clock,
            quotas=quotas,
            monitor=monitor,
        )

    return _make
