"""Rate limiting data models, subscription tiers and endpoint policies."""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SubscriptionTier(str, Enum):
    """Subscription tier levels."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


# Plan name to tier mapping
PLAN_TO_TIER: dict[str, SubscriptionTier] = {
    # Free tier
    "free": SubscriptionTier.FREE,
    "trial": SubscriptionTier.FREE,
    # Pro tier
    "pro": SubscriptionTier.PRO,
    "professional": SubscriptionTier.PRO,
    "standard": SubscriptionTier.PRO,
    # Enterprise tier
    "enterprise": SubscriptionTier.ENTERPRISE,
    "premium": SubscriptionTier.ENTERPRISE,
    "unlimited": SubscriptionTier.ENTERPRISE,
}


def get_tier_for_plan(plan: str | None) -> SubscriptionTier:
    """Get subscription tier for a plan name.

    Args:
        plan: Plan or tier name supplied by the authentication layer.

    Returns:
        Subscription tier (FREE for unknown plans).
    """
    if not plan:
        return SubscriptionTier.FREE

    plan_lower = plan.lower()
    return PLAN_TO_TIER.get(plan_lower, SubscriptionTier.FREE)


class QuotaKind(str, Enum):
    """Usage counted against a tier quota."""

    MESSAGES = "messages"
    TOKENS = "tokens"
    DOCUMENT_UPLOADS = "document_uploads"


class Algorithm(str, Enum):
    """Rate limiting algorithms."""

    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"


# Window name to window size in milliseconds
WINDOW_SIZES_MS: dict[str, int] = {
    "per_second": 1_000,
    "per_minute": 60_000,
    "per_hour": 3_600_000,
    "per_day": 86_400_000,
}

DEFAULT_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."


class Subject(BaseModel):
    """Authenticated caller a limit is scoped to."""

    id: str = Field(..., min_length=1, description="User ID")
    role: str = Field(default="user", description="User role")
    subscription_tier: SubscriptionTier = Field(
        default=SubscriptionTier.FREE, description="Subscription tier"
    )

    @field_validator("subscription_tier", mode="before")
    @classmethod
    def _coerce_tier(cls, value: Any) -> Any:
        if value is None or isinstance(value, SubscriptionTier):
            return value or SubscriptionTier.FREE
        return get_tier_for_plan(str(value))


class RequestContext(BaseModel):
    """Request metadata the enforcement decision is based on."""

    subject: Subject | None = Field(default=None, description="Caller, None if anonymous")
    client_ip: str = Field(default="unknown", description="Client IP address")
    path: str = Field(default="", description="Request path")
    method: str = Field(default="GET", description="HTTP method")
    headers: dict[str, str] = Field(default_factory=dict, description="Request headers")


BypassPredicate = Callable[[Subject | None, RequestContext], bool]


class WindowLimits(BaseModel):
    """Request limits per fixed window."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    per_second: int | None = Field(default=None, gt=0)
    per_minute: int | None = Field(default=None, gt=0)
    per_hour: int | None = Field(default=None, gt=0)
    per_day: int | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _require_window(self) -> "WindowLimits":
        if not self.windows():
            raise ValueError("at least one window limit is required")
        return self

    def windows(self) -> dict[str, int]:
        """Configured limits keyed by window name, shortest window first."""
        return {
            name: getattr(self, name)
            for name in WINDOW_SIZES_MS
            if getattr(self, name) is not None
        }


class BucketLimits(BaseModel):
    """Token bucket parameters."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    capacity: int = Field(..., gt=0, description="Maximum tokens in the bucket")
    refill_rate: float = Field(..., gt=0, description="Tokens added per second")


class EndpointPolicy(BaseModel):
    """Rate limit policy for one operation.

    Policies are validated when the policy table is loaded and are
    immutable afterwards.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    operation: str = Field(..., min_length=1, description="Operation name, e.g. chat.message")
    algorithm: Algorithm = Field(..., description="Limiting algorithm")
    limits: WindowLimits | None = Field(default=None, description="Sliding window limits")
    bucket: BucketLimits | None = Field(default=None, description="Token bucket limits")
    tier_multipliers: dict[SubscriptionTier, float] = Field(default_factory=dict)
    role_multipliers: dict[str, float] = Field(default_factory=dict)
    require_auth: bool = Field(
        default=True, description="Only limit identified callers"
    )
    message: str = Field(default=DEFAULT_LIMIT_MESSAGE, description="Message on denial")
    global_limits: WindowLimits | None = Field(
        default=None, description="System-wide ceiling regardless of subject"
    )
    quota: QuotaKind | None = Field(
        default=None, description="Tier quota one admitted request consumes"
    )
    bypass: BypassPredicate | None = Field(default=None, exclude=True)

    @field_validator("tier_multipliers", "role_multipliers")
    @classmethod
    def _positive_multipliers(cls, value: dict[Any, float]) -> dict[Any, float]:
        for key, factor in value.items():
            if factor <= 0:
                raise ValueError(f"multiplier for {key!s} must be positive")
        return value

    @model_validator(mode="after")
    def _require_algorithm_limits(self) -> "EndpointPolicy":
        if self.algorithm is Algorithm.SLIDING_WINDOW and self.limits is None:
            raise ValueError("sliding_window policies require limits")
        if self.algorithm is Algorithm.TOKEN_BUCKET and self.bucket is None:
            raise ValueError("token_bucket policies require bucket")
        return self


class KeyScope(str, Enum):
    """Scope of a rate limit counter."""

    SUBJECT = "subject"
    GLOBAL = "global"


def _segment(value: str) -> str:
    # Encodes ":" and glob characters so keys can be matched by prefix
    return quote(value, safe="")


def subject_key_prefix(prefix: str, subject_id: str, operation: str) -> str:
    """Prefix shared by every key of a subject + operation."""
    return f"{prefix}:subject:{_segment(subject_id)}:{_segment(operation)}:"


def quota_key_prefix(prefix: str, subject_id: str) -> str:
    """Prefix shared by every quota counter of a subject."""
    return f"{prefix}:quota:{_segment(subject_id)}:"


@dataclass(frozen=True)
class RateLimitKey:
    """Identifies one counter or bucket in a store."""

    scope: KeyScope
    operation: str
    subject_id: str | None = None
    window_ms: int | None = None
    window_index: int | None = None

    @classmethod
    def window(
        cls, subject_id: str, operation: str, window_ms: int, window_index: int
    ) -> "RateLimitKey":
        return cls(KeyScope.SUBJECT, operation, subject_id, window_ms, window_index)

    @classmethod
    def global_window(
        cls, operation: str, window_ms: int, window_index: int
    ) -> "RateLimitKey":
        return cls(KeyScope.GLOBAL, operation, None, window_ms, window_index)

    @classmethod
    def bucket(cls, subject_id: str, operation: str) -> "RateLimitKey":
        return cls(KeyScope.SUBJECT, operation, subject_id)

    def render(self, prefix: str) -> str:
        """Render the store key."""
        if self.scope is KeyScope.GLOBAL:
            return (
                f"{prefix}:global:{_segment(self.operation)}:"
                f"{self.window_ms}:{self.window_index}"
            )
        base = subject_key_prefix(prefix, self.subject_id or "", self.operation)
        if self.window_index is None:
            return f"{base}bucket"
        return f"{base}{self.window_ms}:{self.window_index}"


@dataclass
class Counter:
    """Fixed window counter held by the local store."""

    count: int
    expires_at: float


@dataclass
class BucketState:
    """Token bucket state held by the local store."""

    tokens: float
    last_refill_at: int
    capacity: float
    refill_rate: float
    expires_at: float


@dataclass(frozen=True)
class BucketResult:
    """Outcome of an atomic refill-and-consume."""

    allowed: bool
    tokens_remaining: float
    last_refill_at: int


class RateLimitDecision(BaseModel):
    """Result of one rate limit check."""

    allowed: bool = Field(..., description="Whether the request may proceed")
    remaining: int = Field(..., ge=0, description="Requests or tokens left")
    limit: int = Field(..., description="Effective limit or bucket capacity")
    reset_time: int | None = Field(
        None, description="Epoch milliseconds when the limit resets"
    )
    retry_after: int | None = Field(
        None, description="Seconds until a retry can succeed (denials only)"
    )


class RateLimitExceeded(BaseModel):
    """Rate limit exceeded response body."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(default=False)
    error: str = Field(default="RATE_LIMIT_EXCEEDED", description="Error code")
    message: str = Field(..., description="Human-readable error message")
    retry_after: int = Field(..., alias="retryAfter", description="Seconds until retry")
    limit: int = Field(..., description="The limit value")
    remaining: int = Field(default=0, description="Remaining requests")
    reset_time: int | None = Field(
        None, alias="resetTime", description="Epoch milliseconds when the limit resets"
    )
    timestamp: str = Field(..., description="ISO 8601 time of the decision")
