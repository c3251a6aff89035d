"""Rate limiting and quota enforcement module.

This module implements rate limiting for the gateway:
- Fixed window counters and token buckets in a shared Redis store
- System-wide ceilings per operation
- Subscription tier and role multipliers
- In-process fallback while Redis is unreachable
- Per-tier daily and monthly usage quotas
- Usage alerts at high usage and on repeated denials
"""

from gateway_guard.ratelimit.alerts import (
    AlertSeverity,
    AlertType,
    RateLimitAlert,
    UsageAlertMonitor,
)
from gateway_guard.ratelimit.exceptions import (
    PolicyConfigError,
    RateLimitError,
    StoreTimeoutError,
    StoreUnavailableError,
    UnsupportedAlgorithmError,
)
from gateway_guard.ratelimit.limiter import (
    Backend,
    GlobalLimiter,
    LimitOutcome,
    OutcomeStatus,
    SlidingWindowLimiter,
    TokenBucketLimiter,
)
from gateway_guard.ratelimit.local import LocalCounterStore, LocalFallbackLimiter
from gateway_guard.ratelimit.middleware import (
    DEFAULT_ROUTES,
    RateLimitMiddleware,
    RouteRule,
    get_client_ip,
    get_subject_from_request,
)
from gateway_guard.ratelimit.models import (
    PLAN_TO_TIER,
    Algorithm,
    EndpointPolicy,
    QuotaKind,
    RateLimitDecision,
    RateLimitExceeded,
    RequestContext,
    Subject,
    SubscriptionTier,
    get_tier_for_plan,
)
from gateway_guard.ratelimit.policy import (
    DEFAULT_POLICIES,
    BypassRules,
    PolicyResolver,
    PolicyTable,
    ResolutionState,
    ResolvedPolicy,
    load_policy_table,
)
from gateway_guard.ratelimit.quota import (
    DEFAULT_QUOTA_LIMITS,
    UNLIMITED,
    QuotaCheck,
    QuotaLimits,
    QuotaPeriod,
    QuotaService,
    QuotaUsage,
)
from gateway_guard.ratelimit.router import quota_router
from gateway_guard.ratelimit.router import router as rate_limit_router
from gateway_guard.ratelimit.service import (
    EnforcementResult,
    EnforcementState,
    RateLimitService,
    get_rate_limit_service,
)
from gateway_guard.ratelimit.store import CounterStore, RedisCounterStore
from gateway_guard.ratelimit.usage import RateLimitUsageRecorder, UsageEvent

__all__ = [
    # Alerts
    "AlertSeverity",
    "AlertType",
    "RateLimitAlert",
    "UsageAlertMonitor",
    # Exceptions
    "PolicyConfigError",
    "RateLimitError",
    "StoreTimeoutError",
    "StoreUnavailableError",
    "UnsupportedAlgorithmError",
    # Limiters
    "Backend",
    "GlobalLimiter",
    "LimitOutcome",
    "OutcomeStatus",
    "SlidingWindowLimiter",
    "TokenBucketLimiter",
    # Stores
    "CounterStore",
    "LocalCounterStore",
    "LocalFallbackLimiter",
    "RedisCounterStore",
    # Middleware
    "DEFAULT_ROUTES",
    "RateLimitMiddleware",
    "RouteRule",
    "get_client_ip",
    "get_subject_from_request",
    # Models
    "PLAN_TO_TIER",
    "Algorithm",
    "EndpointPolicy",
    "QuotaKind",
    "RateLimitDecision",
    "RateLimitExceeded",
    "RequestContext",
    "Subject",
    "SubscriptionTier",
    "get_tier_for_plan",
    # Policies
    "DEFAULT_POLICIES",
    "BypassRules",
    "PolicyResolver",
    "PolicyTable",
    "ResolutionState",
    "ResolvedPolicy",
    "load_policy_table",
    # Quotas
    "DEFAULT_QUOTA_LIMITS",
    "UNLIMITED",
    "QuotaCheck",
    "QuotaLimits",
    "QuotaPeriod",
    "QuotaService",
    "QuotaUsage",
    # Service
    "EnforcementResult",
    "EnforcementState",
    "RateLimitService",
    "get_rate_limit_service",
    "quota_router",
    "rate_limit_router",
    # Usage
    "RateLimitUsageRecorder",
    "UsageEvent",
]
