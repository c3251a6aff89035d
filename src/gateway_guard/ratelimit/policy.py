"""Endpoint policy table and per-request policy resolution."""

import json
import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from gateway_guard.config import Settings
from gateway_guard.ratelimit.exceptions import PolicyConfigError
from gateway_guard.ratelimit.models import (
    WINDOW_SIZES_MS,
    Algorithm,
    BypassPredicate,
    EndpointPolicy,
    RequestContext,
    Subject,
    SubscriptionTier,
)

logger = logging.getLogger(__name__)


# Role multipliers for policies that do not declare their own
DEFAULT_ROLE_MULTIPLIERS: dict[str, float] = {
    "admin": 10,
    "moderator": 5,
    "premium": 3,
}

# Operations each role is exempt from
DEFAULT_ROLE_BYPASS_ENDPOINTS: dict[str, list[str]] = {
    "admin": ["system.health", "system.metrics"],
    "moderator": ["system.health"],
}

# Built-in policy table, keyed by operation name
DEFAULT_POLICIES: dict[str, dict[str, Any]] = {
    # Authentication - strict limits against brute force
    "auth.login": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 5, "per_hour": 20, "per_day": 50},
        "require_auth": False,
        "message": "Too many login attempts. Please try again later.",
    },
    "auth.register": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 2, "per_hour": 5, "per_day": 10},
        "require_auth": False,
        "message": "Too many registration attempts. Please try again later.",
    },
    "auth.password-reset": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 1, "per_hour": 3, "per_day": 5},
        "require_auth": False,
        "message": "Too many password reset requests. Please try again later.",
    },
    "auth.refresh": {
        "algorithm": "token_bucket",
        "bucket": {"capacity": 10, "refill_rate": 0.1},
        "require_auth": False,
        "message": "Token refresh rate exceeded. Please wait before requesting again.",
    },
    # Chat - moderate limits for conversational flow
    "chat.message": {
        "algorithm": "token_bucket",
        "bucket": {"capacity": 10, "refill_rate": 0.2},
        "tier_multipliers": {"free": 1, "pro": 3, "enterprise": 5},
        "global_limits": {"per_second": 50},
        "message": "Chat message rate limit exceeded. Please slow down.",
        "quota": "messages",
    },
    "chat.new-conversation": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 5, "per_hour": 50},
        "tier_multipliers": {"free": 1, "pro": 2, "enterprise": 5},
        "message": "Too many new conversations created. Please wait.",
    },
    "chat.delete-conversation": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 10, "per_hour": 100},
        "message": "Too many delete requests. Please wait.",
    },
    "chat.get-conversations": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 30, "per_hour": 200},
        "message": "Too many conversation list requests.",
    },
    # Documents - restricted for resource management
    "documents.upload": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 2, "per_hour": 10, "per_day": 50},
        "tier_multipliers": {"free": 1, "pro": 3, "enterprise": 10},
        "global_limits": {"per_minute": 20},
        "message": "Document upload rate limit exceeded.",
        "quota": "document_uploads",
    },
    "documents.bulk-upload": {
        "algorithm": "sliding_window",
        "limits": {"per_hour": 3, "per_day": 10},
        "tier_multipliers": {"free": 0.5, "pro": 1, "enterprise": 3},
        "message": "Bulk upload rate limit exceeded.",
        "quota": "document_uploads",
    },
    "documents.delete": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 5, "per_hour": 50},
        "message": "Document deletion rate limit exceeded.",
    },
    "documents.search": {
        "algorithm": "token_bucket",
        "bucket": {"capacity": 15, "refill_rate": 0.25},
        "tier_multipliers": {"free": 1, "pro": 2, "enterprise": 4},
        "message": "Document search rate limit exceeded.",
    },
    "documents.get-list": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 20, "per_hour": 100},
        "message": "Too many document list requests.",
    },
    # Admin - very strict limits
    "admin.user-management": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 10, "per_hour": 100},
        "message": "Admin user management rate limit exceeded.",
    },
    "admin.system-metrics": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 5, "per_hour": 50},
        "message": "Admin metrics access rate limit exceeded.",
    },
    "admin.rate-limit-reset": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 2, "per_hour": 10},
        "message": "Admin rate limit reset usage exceeded.",
    },
    # Health and monitoring - relaxed limits
    "system.health": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 60, "per_hour": 1000},
        "require_auth": False,
        "message": "Health check rate limit exceeded.",
    },
    "system.metrics": {
        "algorithm": "sliding_window",
        "limits": {"per_minute": 10, "per_hour": 100},
        "message": "Metrics endpoint rate limit exceeded.",
    },
}


@dataclass(frozen=True)
class BypassRules:
    """Requests exempt from rate limiting."""

    whitelisted_ips: frozenset[str] = frozenset()
    user_ids: frozenset[str] = frozenset()
    role_endpoints: Mapping[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "BypassRules":
        return cls(
            whitelisted_ips=frozenset(settings.rate_limit_whitelisted_ips),
            user_ids=frozenset(settings.rate_limit_bypass_user_ids),
            role_endpoints={
                role: frozenset(endpoints)
                for role, endpoints in DEFAULT_ROLE_BYPASS_ENDPOINTS.items()
            },
        )

    def predicate_for(self, operation: str) -> BypassPredicate:
        """Build the bypass predicate for one operation."""

        def _bypass(subject: Subject | None, request: RequestContext) -> bool:
            if request.client_ip in self.whitelisted_ips:
                return True
            if subject is None:
                return False
            if subject.id in self.user_ids:
                return True
            return operation in self.role_endpoints.get(subject.role, frozenset())

        return _bypass


class PolicyTable:
    """Validated endpoint policies keyed by operation."""

    def __init__(self, policies: Iterable[EndpointPolicy] = ()):
        self._policies = {policy.operation: policy for policy in policies}

    def get(self, operation: str) -> EndpointPolicy | None:
        return self._policies.get(operation)

    def operations(self) -> list[str]:
        return sorted(self._policies)

    def __contains__(self, operation: object) -> bool:
        return operation in self._policies

    def __len__(self) -> int:
        return len(self._policies)

    @classmethod
    def from_definitions(
        cls,
        definitions: Mapping[str, Mapping[str, Any]],
        bypass_rules: BypassRules | None = None,
        default_role_multipliers: Mapping[str, float] | None = None,
    ) -> "PolicyTable":
        """Build a table from raw policy definitions.

        Invalid definitions are logged and left out, so a typo disables
        limiting for one operation instead of the whole table.

        Args:
            definitions: Mapping of operation name to policy fields.
            bypass_rules: Rules compiled into each policy's bypass predicate.
            default_role_multipliers: Role factors for policies without their own.

        Returns:
            Policy table.
        """
        if default_role_multipliers is None:
            default_role_multipliers = DEFAULT_ROLE_MULTIPLIERS

        policies = []
        for operation, definition in definitions.items():
            data = dict(definition)
            data.setdefault("operation", operation)
            data.setdefault("role_multipliers", dict(default_role_multipliers))
            if bypass_rules is not None and "bypass" not in data:
                data["bypass"] = bypass_rules.predicate_for(data["operation"])
            try:
                policies.append(EndpointPolicy.model_validate(data))
            except ValidationError as e:
                logger.error("Skipping invalid rate limit policy %s: %s", operation, e)

        logger.info("Loaded %d rate limit policies", len(policies))
        return cls(policies)

    @classmethod
    def from_file(
        cls,
        path: str | Path,
        bypass_rules: BypassRules | None = None,
    ) -> "PolicyTable":
        """Load a table from a JSON object of operation -> policy."""
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PolicyConfigError(f"Cannot read rate limit policies from {path}: {e}") from e

        if not isinstance(raw, dict):
            raise PolicyConfigError(f"Rate limit policy file {path} must hold a JSON object")

        return cls.from_definitions(raw, bypass_rules)


def load_policy_table(settings: Settings) -> PolicyTable:
    """Load the configured policy table (built-in defaults if no file)."""
    rules = BypassRules.from_settings(settings)
    if settings.rate_limit_policy_file:
        return PolicyTable.from_file(settings.rate_limit_policy_file, rules)
    return PolicyTable.from_definitions(DEFAULT_POLICIES, rules)


def apply_multipliers(value: float, tier_factor: float, role_factor: float) -> int:
    """Scale a base limit by tier, then by role.

    Each step floors. Tier factors below 1 reduce the limit; role factors
    only ever raise it, so a role factor of 1 or less is ignored.
    """
    adjusted = math.floor(value * tier_factor)
    if role_factor > 1:
        adjusted = math.floor(adjusted * role_factor)
    return adjusted


class ResolutionState(str, Enum):
    """Result of policy resolution."""

    NO_POLICY = "no_policy"
    BYPASS = "bypass"
    UNAUTH_SKIP = "unauth_skip"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class ResolvedPolicy:
    """Effective limits for one subject and operation."""

    policy: EndpointPolicy
    subject_id: str
    tier: SubscriptionTier
    role: str
    window_limits: dict[str, int] = field(default_factory=dict)
    capacity: int | None = None
    refill_rate: float | None = None

    @property
    def operation(self) -> str:
        return self.policy.operation

    @property
    def algorithm(self) -> Algorithm:
        return self.policy.algorithm

    @property
    def message(self) -> str:
        return self.policy.message

    def windows(self) -> list[tuple[int, int]]:
        """(window_ms, limit) pairs for sliding window checks."""
        return [(WINDOW_SIZES_MS[name], limit) for name, limit in self.window_limits.items()]

    def global_windows(self) -> list[tuple[int, int]]:
        """(window_ms, limit) pairs of the operation's global ceiling."""
        if self.policy.global_limits is None:
            return []
        return [
            (WINDOW_SIZES_MS[name], limit)
            for name, limit in self.policy.global_limits.windows().items()
        ]


@dataclass(frozen=True)
class PolicyResolution:
    state: ResolutionState
    resolved: ResolvedPolicy | None = None


class PolicyResolver:
    """Maps (operation, request) to the effective policy."""

    ANONYMOUS_ROLE = "anonymous"

    def __init__(self, table: PolicyTable):
        self._table = table

    @property
    def table(self) -> PolicyTable:
        return self._table

    def resolve(self, operation: str, request: RequestContext) -> PolicyResolution:
        """Resolve the policy for a request.

        Args:
            operation: Operation name.
            request: Request metadata with the (optional) subject.

        Returns:
            Resolution state, with effective limits when RESOLVED.
        """
        policy = self._table.get(operation)
        if policy is None:
            logger.debug("No rate limit policy for %s", operation)
            return PolicyResolution(ResolutionState.NO_POLICY)

        subject = request.subject
        if policy.bypass is not None and policy.bypass(subject, request):
            logger.debug(
                "Rate limit bypassed for %s:%s",
                subject.id if subject else request.client_ip,
                operation,
            )
            return PolicyResolution(ResolutionState.BYPASS)

        if subject is None and policy.require_auth:
            return PolicyResolution(ResolutionState.UNAUTH_SKIP)

        if subject is not None:
            subject_id = subject.id
            tier = subject.subscription_tier
            role = subject.role
        else:
            subject_id = request.client_ip
            tier = SubscriptionTier.FREE
            role = self.ANONYMOUS_ROLE

        tier_factor = policy.tier_multipliers.get(tier, 1.0)
        role_factor = policy.role_multipliers.get(role, 1.0)

        window_limits: dict[str, int] = {}
        if policy.limits is not None:
            window_limits = {
                name: apply_multipliers(limit, tier_factor, role_factor)
                for name, limit in policy.limits.windows().items()
            }

        capacity = None
        refill_rate = None
        if policy.bucket is not None:
            capacity = apply_multipliers(policy.bucket.capacity, tier_factor, role_factor)
            refill_rate = policy.bucket.refill_rate

        return PolicyResolution(
            ResolutionState.RESOLVED,
            ResolvedPolicy(
                policy=policy,
                subject_id=subject_id,
                tier=tier,
                role=role,
                window_limits=window_limits,
                capacity=capacity,
                refill_rate=refill_rate,
            ),
        )
