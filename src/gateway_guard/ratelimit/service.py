"""Rate limit enforcement service."""

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from gateway_guard.config import Settings, get_settings
from gateway_guard.ratelimit.alerts import UsageAlertMonitor
from gateway_guard.ratelimit.algorithms import now_ms, retry_after_seconds, window_index
from gateway_guard.ratelimit.exceptions import StoreUnavailableError, UnsupportedAlgorithmError
from gateway_guard.ratelimit.limiter import (
    Backend,
    GlobalLimiter,
    LimitOutcome,
    OutcomeStatus,
    SlidingWindowLimiter,
    TokenBucketLimiter,
)
from gateway_guard.ratelimit.local import LocalCounterStore, LocalFallbackLimiter
from gateway_guard.ratelimit.models import (
    WINDOW_SIZES_MS,
    Algorithm,
    RateLimitDecision,
    RateLimitExceeded,
    RateLimitKey,
    RequestContext,
    subject_key_prefix,
)
from gateway_guard.ratelimit.policy import (
    PolicyResolver,
    PolicyTable,
    ResolutionState,
    ResolvedPolicy,
    load_policy_table,
)
from gateway_guard.ratelimit.quota import QuotaCheck, QuotaService
from gateway_guard.ratelimit.store import CounterStore, RedisCounterStore
from gateway_guard.ratelimit.usage import RateLimitUsageRecorder, UsageEvent
from gateway_guard.telemetry import get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

RATE_LIMIT_ERROR = "RATE_LIMIT_EXCEEDED"
GLOBAL_LIMIT_ERROR = "GLOBAL_RATE_LIMIT_EXCEEDED"
GLOBAL_LIMIT_MESSAGE = "Service is receiving too many requests. Please try again later."
QUOTA_ERROR = "QUOTA_EXCEEDED"


class EnforcementState(str, Enum):
    """Terminal state reached by an enforcement."""

    DISABLED = "disabled"
    NO_POLICY = "no_policy"
    BYPASS = "bypass"
    UNAUTH_SKIP = "unauth_skip"
    ALLOWED = "allowed"
    DENIED = "denied"
    FAILED_OPEN = "failed_open"


_RESOLUTION_STATES = {
    ResolutionState.NO_POLICY: EnforcementState.NO_POLICY,
    ResolutionState.BYPASS: EnforcementState.BYPASS,
    ResolutionState.UNAUTH_SKIP: EnforcementState.UNAUTH_SKIP,
}

_USAGE_EVENTS = {
    EnforcementState.NO_POLICY: UsageEvent.SKIPPED,
    EnforcementState.UNAUTH_SKIP: UsageEvent.SKIPPED,
    EnforcementState.BYPASS: UsageEvent.BYPASSED,
    EnforcementState.ALLOWED: UsageEvent.ALLOWED,
    EnforcementState.DENIED: UsageEvent.DENIED,
    EnforcementState.FAILED_OPEN: UsageEvent.FAILED_OPEN,
}


@dataclass(frozen=True)
class EnforcementResult:
    """Admit or reject, with what the HTTP layer needs to say so."""

    state: EnforcementState
    operation: str
    decision: RateLimitDecision | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: RateLimitExceeded | None = None
    backend: Backend | None = None
    reason: str | None = None
    subject_id: str | None = None
    global_limit: bool = False
    quota: QuotaCheck | None = None

    @property
    def admitted(self) -> bool:
        return self.state is not EnforcementState.DENIED

    def response_content(self) -> dict[str, Any] | None:
        """429 response body, None when admitted."""
        if self.body is None:
            return None
        return self.body.model_dump(by_alias=True)


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    """Build rate limit response headers for a decision.

    Args:
        decision: Governing decision.

    Returns:
        Header name to value.
    """
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
    }
    if decision.reset_time is not None:
        headers["X-RateLimit-Reset"] = str(math.ceil(decision.reset_time / 1000))
    if not decision.allowed and decision.retry_after is not None:
        headers["Retry-After"] = str(decision.retry_after)
    return headers


def quota_headers(check: QuotaCheck) -> dict[str, str]:
    """Build quota response headers for a limited quota check."""
    headers = {
        "X-Quota-Limit": str(check.limit),
        "X-Quota-Remaining": str(check.remaining),
    }
    if check.reset_time is not None:
        headers["X-Quota-Reset"] = str(math.ceil(check.reset_time / 1000))
    return headers


class RateLimitService:
    """Decides whether a request may proceed.

    Resolves the policy for the operation, checks the global ceiling when
    the policy declares one, then the subject's own limit. Anything that
    goes wrong on the way admits the request.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        store: CounterStore | None = None,
        fallback: LocalFallbackLimiter | None = None,
        policies: PolicyTable | None = None,
        recorder: RateLimitUsageRecorder | None = None,
        clock: Callable[[], int] | None = None,
        quotas: QuotaService | None = None,
        monitor: UsageAlertMonitor | None = None,
    ):
        """Initialize rate limit service.

        Args:
            settings: Application settings.
            store: Shared counter store (Redis from settings if not provided).
            fallback: Local fallback limiter.
            policies: Policy table (loaded from settings if not provided).
            recorder: Usage recorder.
            clock: Time source in epoch milliseconds.
            quotas: Usage quota service (over the shared store if not provided).
            monitor: Usage alert monitor.
        """
        self._settings = settings or get_settings()
        self._clock = clock if clock is not None else now_ms
        self._store = store if store is not None else RedisCounterStore(self._settings)
        if fallback is None:
            fallback = LocalFallbackLimiter(self._settings, LocalCounterStore(clock=self._clock))
        self._fallback = fallback
        if policies is None:
            policies = load_policy_table(self._settings)
        self._resolver = PolicyResolver(policies)
        self._recorder = recorder if recorder is not None else RateLimitUsageRecorder()
        self._quotas = (
            quotas
            if quotas is not None
            else QuotaService(self._settings, self._store, clock=self._clock)
        )
        self._monitor = (
            monitor if monitor is not None else UsageAlertMonitor(self._settings, self._clock)
        )

        limiter_args = (self._store, self._fallback, self._settings, self._clock)
        self._window_limiter = SlidingWindowLimiter(*limiter_args)
        self._global_limiter = GlobalLimiter(*limiter_args)
        self._bucket_limiter = TokenBucketLimiter(*limiter_args)

    @property
    def recorder(self) -> RateLimitUsageRecorder:
        return self._recorder

    @property
    def policies(self) -> PolicyTable:
        return self._resolver.table

    @property
    def quotas(self) -> QuotaService:
        return self._quotas

    @property
    def monitor(self) -> UsageAlertMonitor:
        return self._monitor

    async def start(self) -> None:
        """Start background work (fallback sweeping)."""
        await self._fallback.start()
        logger.info(
            "Rate limit service started with %d policies (enabled=%s)",
            len(self.policies),
            self._settings.rate_limit_enabled,
        )

    async def close(self) -> None:
        """Stop background work and close the shared store."""
        await self._fallback.stop()
        await self._store.close()
        logger.info("Rate limit service stopped")

    async def is_store_available(self) -> bool:
        return await self._store.is_available()

    async def enforce(
        self,
        operation: str,
        request: RequestContext,
        now: int | None = None,
    ) -> EnforcementResult:
        """Decide a request.

        Never raises: errors are logged and the request is admitted.

        Args:
            operation: Operation name, e.g. ``chat.message``.
            request: Request metadata with the (optional) subject.
            now: Current time in epoch milliseconds (clock if omitted).

        Returns:
            Enforcement result.
        """
        if not self._settings.rate_limit_enabled:
            return EnforcementResult(EnforcementState.DISABLED, operation)

        now = self._clock() if now is None else now

        with tracer.start_as_current_span("rate_limit.enforce") as span:
            span.set_attribute("rate_limit.operation", operation)
            try:
                result = await self._enforce(operation, request, now)
            except UnsupportedAlgorithmError as e:
                logger.error("%s for %s, allowing request", e, operation)
                result = EnforcementResult(
                    EnforcementState.FAILED_OPEN, operation, reason=str(e)
                )
            except Exception as e:
                logger.exception(
                    "Rate limit enforcement failed for %s, allowing request: %s",
                    operation,
                    e,
                )
                result = EnforcementResult(
                    EnforcementState.FAILED_OPEN, operation, reason=str(e)
                )

            span.set_attribute("rate_limit.state", result.state.value)
            if result.backend is not None:
                span.set_attribute("rate_limit.backend", result.backend.value)

            self._record(result)
        return result

    async def _enforce(
        self, operation: str, request: RequestContext, now: int
    ) -> EnforcementResult:
        resolution = self._resolver.resolve(operation, request)
        if resolution.resolved is None:
            return EnforcementResult(_RESOLUTION_STATES[resolution.state], operation)

        resolved = resolution.resolved

        # Global ceiling first; a global denial leaves the subject's budget alone
        for window_ms, limit in resolved.global_windows():
            outcome = await self._global_limiter.check(operation, limit, window_ms, now)
            if outcome.status is OutcomeStatus.DENIED:
                return self._conclude(resolved, outcome, now, global_limit=True)
            if outcome.status is OutcomeStatus.DEGRADED:
                logger.warning(
                    "Global rate limit check degraded for %s, checking subject limit: %s",
                    operation,
                    outcome.reason,
                )

        if resolved.algorithm is Algorithm.SLIDING_WINDOW:
            outcome = await self._check_windows(resolved, now)
        elif resolved.algorithm is Algorithm.TOKEN_BUCKET:
            if resolved.capacity is None or resolved.refill_rate is None:
                raise ValueError(f"Token bucket policy {operation} has no bucket")
            outcome = await self._bucket_limiter.check(
                resolved.subject_id,
                operation,
                resolved.capacity,
                resolved.refill_rate,
                now=now,
            )
        else:
            raise UnsupportedAlgorithmError(str(resolved.algorithm))

        result = self._conclude(resolved, outcome, now)
        if (
            result.state is EnforcementState.ALLOWED
            and resolved.policy.quota is not None
            and request.subject is not None
            and self._settings.quota_enabled
        ):
            result = await self._apply_quota(resolved, result, now)
        return result

    async def _check_windows(self, resolved: ResolvedPolicy, now: int) -> LimitOutcome:
        """Check every window of a policy.

        Any denial denies, the one with the longest retry winning. When all
        windows admit, the one with the fewest remaining requests governs.
        """
        checked: list[tuple[RateLimitDecision, LimitOutcome]] = []
        for window_ms, limit in resolved.windows():
            outcome = await self._window_limiter.check(
                resolved.subject_id, resolved.operation, limit, window_ms, now
            )
            if outcome.decision is None:
                return outcome
            checked.append((outcome.decision, outcome))

        if not checked:
            raise ValueError(f"Sliding window policy {resolved.operation} has no windows")

        denials = [pair for pair in checked if not pair[0].allowed]
        if denials:
            return max(denials, key=lambda pair: pair[0].retry_after or 0)[1]
        return min(checked, key=lambda pair: pair[0].remaining)[1]

    def _conclude(
        self,
        resolved: ResolvedPolicy,
        outcome: LimitOutcome,
        now: int,
        global_limit: bool = False,
    ) -> EnforcementResult:
        operation = resolved.operation
        decision = outcome.decision

        if outcome.status is OutcomeStatus.DEGRADED or decision is None:
            logger.warning(
                "Rate limit check degraded for %s:%s, allowing request: %s",
                resolved.subject_id,
                operation,
                outcome.reason,
            )
            return EnforcementResult(
                EnforcementState.FAILED_OPEN,
                operation,
                backend=outcome.backend,
                reason=outcome.reason,
                subject_id=resolved.subject_id,
            )

        headers = rate_limit_headers(decision)

        if decision.allowed:
            return EnforcementResult(
                EnforcementState.ALLOWED,
                operation,
                decision=decision,
                headers=headers,
                backend=outcome.backend,
                reason=outcome.reason,
                subject_id=resolved.subject_id,
                global_limit=global_limit,
            )

        logger.info(
            "Rate limit exceeded for %s:%s (limit=%d, retry_after=%s)",
            resolved.subject_id,
            operation,
            decision.limit,
            decision.retry_after,
        )
        body = RateLimitExceeded(
            error=GLOBAL_LIMIT_ERROR if global_limit else RATE_LIMIT_ERROR,
            message=GLOBAL_LIMIT_MESSAGE if global_limit else resolved.message,
            retry_after=decision.retry_after or 1,
            limit=decision.limit,
            reset_time=decision.reset_time,
            timestamp=datetime.fromtimestamp(now / 1000, tz=timezone.utc).isoformat(),
        )
        return EnforcementResult(
            EnforcementState.DENIED,
            operation,
            decision=decision,
            headers=headers,
            body=body,
            backend=outcome.backend,
            reason=outcome.reason,
            subject_id=resolved.subject_id,
            global_limit=global_limit,
        )

    async def _apply_quota(
        self, resolved: ResolvedPolicy, result: EnforcementResult, now: int
    ) -> EnforcementResult:
        """Count one unit of the policy's quota against an admitted request."""
        check = await self._quotas.consume(
            resolved.subject_id, resolved.tier, resolved.policy.quota, now=now
        )
        if check.allowed:
            if check.unlimited or check.reset_time is None:
                return replace(result, quota=check)
            return replace(
                result,
                quota=check,
                headers={**result.headers, **quota_headers(check)},
            )

        reset_time = check.reset_time if check.reset_time is not None else now
        retry_after = retry_after_seconds(reset_time, now)
        decision = RateLimitDecision(
            allowed=False,
            remaining=0,
            limit=check.limit,
            reset_time=reset_time,
            retry_after=retry_after,
        )
        logger.info(
            "Quota exceeded for %s:%s (%s %s, limit=%d)",
            resolved.subject_id,
            resolved.operation,
            check.period.value if check.period else "unknown",
            check.kind.value,
            check.limit,
        )
        body = RateLimitExceeded(
            error=QUOTA_ERROR,
            message=check.message,
            retry_after=retry_after,
            limit=check.limit,
            reset_time=reset_time,
            timestamp=datetime.fromtimestamp(now / 1000, tz=timezone.utc).isoformat(),
        )
        headers = {**result.headers, **quota_headers(check)}
        headers["Retry-After"] = str(retry_after)
        return replace(
            result,
            state=EnforcementState.DENIED,
            decision=decision,
            headers=headers,
            body=body,
            quota=check,
        )

    def _record(self, result: EnforcementResult) -> None:
        event = _USAGE_EVENTS.get(result.state)
        if event is None:
            return
        self._recorder.record(result.operation, event)
        if result.backend is Backend.LOCAL:
            self._recorder.record(result.operation, UsageEvent.FALLBACK)

        quota_exceeded = result.quota is not None and not result.quota.allowed
        if quota_exceeded:
            self._recorder.record(result.operation, UsageEvent.QUOTA_EXCEEDED)
        self._monitor.observe(
            result.operation,
            result.subject_id,
            result.decision,
            global_limit=result.global_limit,
            quota_exceeded=quota_exceeded,
        )

    async def reset_limits(self, subject_id: str, operation: str) -> int:
        """Clear every counter and the bucket of a subject for an operation.

        Args:
            subject_id: User ID or client IP.
            operation: Operation name.

        Returns:
            Number of deleted entries.

        Raises:
            StoreUnavailableError: If the shared store could not be cleared.
        """
        prefix = subject_key_prefix(self._settings.rate_limit_key_prefix, subject_id, operation)
        deleted = await self._fallback.reset(prefix)
        deleted += await self._store.delete_prefix(prefix)
        logger.info(
            "Rate limits reset for %s:%s (%d entries)", subject_id, operation, deleted
        )
        return deleted

    async def get_status(
        self,
        subject_id: str,
        operation: str,
        now: int | None = None,
    ) -> dict[str, Any]:
        """Get current window counts of a subject for an operation.

        Args:
            subject_id: User ID or client IP.
            operation: Operation name.
            now: Current time in epoch milliseconds (clock if omitted).

        Returns:
            Status with base limits and current counts per window.
        """
        now = self._clock() if now is None else now
        policy = self.policies.get(operation)
        status: dict[str, Any] = {
            "subject_id": subject_id,
            "operation": operation,
            "algorithm": policy.algorithm.value if policy else None,
            "store_available": False,
            "windows": {},
        }
        if policy is None or policy.limits is None:
            status["store_available"] = await self._store.is_available()
            return status

        if not await self._store.is_available():
            return status

        prefix = self._settings.rate_limit_key_prefix
        windows: dict[str, dict[str, int]] = {}
        try:
            for name, limit in policy.limits.windows().items():
                window_ms = WINDOW_SIZES_MS[name]
                index = window_index(now, window_ms)
                key = RateLimitKey.window(subject_id, operation, window_ms, index)
                windows[name] = {
                    "count": await self._store.get_count(key.render(prefix)),
                    "limit": limit,
                    "reset_time": (index + 1) * window_ms,
                }
        except StoreUnavailableError as e:
            logger.warning("Could not read rate limit status for %s:%s: %s", subject_id, operation, e)
            return status

        status["store_available"] = True
        status["windows"] = windows
        return status


# Global service instance
_service: RateLimitService | None = None


def get_rate_limit_service() -> RateLimitService:
    """Get the global rate limit service instance.

    Returns:
        RateLimitService instance.
    """
    global _service
    if _service is None:
        _service = RateLimitService()
    return _service
