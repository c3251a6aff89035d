"""Fixed window, global and token bucket limiters over the shared store."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from gateway_guard.config import Settings, get_settings
from gateway_guard.ratelimit.algorithms import (
    bucket_decision,
    now_ms,
    window_decision,
    window_index,
    window_ttl_seconds,
)
from gateway_guard.ratelimit.exceptions import StoreUnavailableError
from gateway_guard.ratelimit.local import LocalFallbackLimiter
from gateway_guard.ratelimit.models import RateLimitDecision, RateLimitKey
from gateway_guard.ratelimit.store import CounterStore

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    """Outcome of a single limiter check."""

    ALLOWED = "allowed"
    DENIED = "denied"
    DEGRADED = "degraded"


class Backend(str, Enum):
    """Store that produced a decision."""

    SHARED = "shared"
    LOCAL = "local"


@dataclass(frozen=True)
class LimitOutcome:
    """Result of a limiter check.

    ``DEGRADED`` means no decision could be computed at all; the caller
    decides whether to admit. A decision made by the local fallback is
    still ``ALLOWED`` or ``DENIED``, with ``backend`` set to ``LOCAL`` and
    ``reason`` explaining why the shared store was skipped.
    """

    status: OutcomeStatus
    decision: RateLimitDecision | None = None
    backend: Backend = Backend.SHARED
    reason: str | None = None

    @classmethod
    def from_decision(
        cls,
        decision: RateLimitDecision,
        backend: Backend = Backend.SHARED,
        reason: str | None = None,
    ) -> "LimitOutcome":
        status = OutcomeStatus.ALLOWED if decision.allowed else OutcomeStatus.DENIED
        return cls(status=status, decision=decision, backend=backend, reason=reason)

    @classmethod
    def degraded(cls, reason: str) -> "LimitOutcome":
        return cls(status=OutcomeStatus.DEGRADED, backend=Backend.LOCAL, reason=reason)

    @property
    def allowed(self) -> bool:
        """Whether the request may proceed (degraded outcomes admit)."""
        return self.status is not OutcomeStatus.DENIED


class _StoreBackedLimiter:
    """Runs a check on the shared store, or on the local fallback when the
    shared store is unavailable or fails."""

    def __init__(
        self,
        store: CounterStore,
        fallback: LocalFallbackLimiter,
        settings: Settings | None = None,
        clock: Callable[[], int] | None = None,
    ):
        """Initialize limiter.

        Args:
            store: Shared counter store.
            fallback: Local fallback limiter.
            settings: Application settings.
            clock: Time source in epoch milliseconds.
        """
        self._store = store
        self._fallback = fallback
        self._settings = settings or get_settings()
        self._clock = clock if clock is not None else now_ms
        self._prefix = self._settings.rate_limit_key_prefix

    def _now(self, now: int | None) -> int:
        return self._clock() if now is None else now

    async def _run(
        self,
        key: RateLimitKey,
        shared: Callable[[], Awaitable[RateLimitDecision]],
        local: Callable[[], Awaitable[RateLimitDecision]],
    ) -> LimitOutcome:
        if not await self._store.is_available():
            logger.debug("Shared store unavailable, checking %s locally", key)
            return await self._run_local(local, "shared counter store unavailable")

        try:
            decision = await shared()
        except StoreUnavailableError as e:
            logger.warning(
                "Shared rate limit check failed for %s, using local fallback: %s",
                key.render(self._prefix),
                e,
            )
            return await self._run_local(local, str(e))

        return LimitOutcome.from_decision(decision)

    async def _run_local(
        self,
        local: Callable[[], Awaitable[RateLimitDecision]],
        reason: str,
    ) -> LimitOutcome:
        try:
            decision = await local()
        except Exception as e:
            logger.exception("Local fallback check failed: %s", e)
            return LimitOutcome.degraded(f"{reason}; local fallback failed: {e}")
        return LimitOutcome.from_decision(decision, Backend.LOCAL, reason)

    async def _check_window(
        self, key: RateLimitKey, limit: int, window_ms: int, now: int
    ) -> LimitOutcome:
        index = window_index(now, window_ms)

        async def shared() -> RateLimitDecision:
            count = await self._store.increment(
                key.render(self._prefix), window_ttl_seconds(window_ms)
            )
            return window_decision(count, limit, index, window_ms, now)

        return await self._run(
            key, shared, lambda: self._fallback.check_window(key, limit, now)
        )


class SlidingWindowLimiter(_StoreBackedLimiter):
    """Per-subject limiter using window-aligned counters.

    Windows are aligned to multiples of their size, so one atomic increment
    decides a request. A burst straddling a boundary can reach twice the
    limit; that is the accepted cost of O(1) counting.
    """

    async def check(
        self,
        subject_id: str,
        operation: str,
        limit: int,
        window_ms: int,
        now: int | None = None,
    ) -> LimitOutcome:
        """Count a request and decide it.

        Args:
            subject_id: User ID or client IP.
            operation: Operation name.
            limit: Effective limit for the window.
            window_ms: Window size in milliseconds.
            now: Current time in epoch milliseconds (clock if omitted).

        Returns:
            Outcome of the check.
        """
        now = self._now(now)
        key = RateLimitKey.window(
            subject_id, operation, window_ms, window_index(now, window_ms)
        )
        return await self._check_window(key, limit, window_ms, now)


class GlobalLimiter(_StoreBackedLimiter):
    """System-wide ceiling for an operation, shared by every subject."""

    async def check(
        self,
        operation: str,
        limit: int,
        window_ms: int,
        now: int | None = None,
    ) -> LimitOutcome:
        """Count a request against the operation's global window.

        Args:
            operation: Operation name.
            limit: Global limit for the window.
            window_ms: Window size in milliseconds.
            now: Current time in epoch milliseconds (clock if omitted).

        Returns:
            Outcome of the check.
        """
        now = self._now(now)
        key = RateLimitKey.global_window(
            operation, window_ms, window_index(now, window_ms)
        )
        outcome = await self._check_window(key, limit, window_ms, now)
        if outcome.status is OutcomeStatus.DENIED:
            logger.warning("Global rate limit exceeded for %s (limit=%d)", operation, limit)
        return outcome


class TokenBucketLimiter(_StoreBackedLimiter):
    """Per-subject token bucket with atomic refill-and-consume."""

    async def check(
        self,
        subject_id: str,
        operation: str,
        capacity: float,
        refill_rate: float,
        tokens_requested: int = 1,
        now: int | None = None,
    ) -> LimitOutcome:
        """Refill the subject's bucket and try to consume from it.

        Args:
            subject_id: User ID or client IP.
            operation: Operation name.
            capacity: Effective bucket capacity.
            refill_rate: Tokens added per second.
            tokens_requested: Tokens this request consumes.
            now: Current time in epoch milliseconds (clock if omitted).

        Returns:
            Outcome of the check.
        """
        now = self._now(now)
        key = RateLimitKey.bucket(subject_id, operation)
        ttl_seconds = self._settings.rate_limit_bucket_ttl_seconds

        async def shared() -> RateLimitDecision:
            result = await self._store.consume_tokens(
                key.render(self._prefix),
                capacity,
                refill_rate,
                tokens_requested,
                now,
                ttl_seconds,
            )
            return bucket_decision(result, capacity, refill_rate, now)

        return await self._run(
            key,
            shared,
            lambda: self._fallback.check_bucket(
                key, capacity, refill_rate, tokens_requested, now
            ),
        )
