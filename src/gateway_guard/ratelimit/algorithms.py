"""Window and token bucket arithmetic.

The shared store path and the local fallback both build their decisions
from these functions, which keeps their allow/deny sequences identical.
The token bucket refill also exists as a Lua script in ``store.py``; the
two must stay in step.
"""

import math
import time

from gateway_guard.ratelimit.models import BucketResult, RateLimitDecision


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def window_index(now: int, window_ms: int) -> int:
    """Index of the fixed window containing ``now``."""
    return now // window_ms


def window_ttl_seconds(window_ms: int) -> int:
    """Expiry for a window counter, at least one second."""
    return max(1, math.ceil(window_ms / 1000))


def retry_after_seconds(until: int, now: int) -> int:
    """Whole seconds from ``now`` until ``until``, never less than one."""
    return max(1, math.ceil((until - now) / 1000))


def window_decision(
    count: int,
    limit: int,
    index: int,
    window_ms: int,
    now: int,
) -> RateLimitDecision:
    """Turn a post-increment window count into a decision.

    Args:
        count: Counter value after this request was counted.
        limit: Effective limit for the window.
        index: Window index the count belongs to.
        window_ms: Window size in milliseconds.
        now: Current time in epoch milliseconds.

    Returns:
        The decision for this request.
    """
    reset_time = (index + 1) * window_ms
    allowed = count <= limit
    return RateLimitDecision(
        allowed=allowed,
        remaining=max(0, limit - count),
        limit=limit,
        reset_time=reset_time,
        retry_after=None if allowed else retry_after_seconds(reset_time, now),
    )


def refill_tokens(
    tokens: float,
    last_refill_at: int,
    now: int,
    capacity: float,
    refill_rate: float,
) -> float:
    """Tokens available at ``now``, counting only whole refilled tokens."""
    elapsed_seconds = max(0, now - last_refill_at) / 1000
    tokens_to_add = math.floor(elapsed_seconds * refill_rate)
    return min(capacity, tokens + tokens_to_add)


def bucket_decision(
    result: BucketResult,
    capacity: float,
    refill_rate: float,
    now: int,
) -> RateLimitDecision:
    """Turn a refill-and-consume result into a decision.

    Denials report the time the next single token becomes available;
    admissions report when the bucket will be full again.
    """
    tokens = result.tokens_remaining
    if result.allowed:
        missing = max(0.0, capacity - tokens)
        reset_time = result.last_refill_at + math.ceil(missing * 1000 / refill_rate)
        retry_after = None
    else:
        reset_time = result.last_refill_at + math.ceil(1000 / refill_rate)
        retry_after = retry_after_seconds(reset_time, now)

    return RateLimitDecision(
        allowed=result.allowed,
        remaining=max(0, math.floor(tokens)),
        limit=int(capacity),
        reset_time=reset_time,
        retry_after=retry_after,
    )
