"""In-process usage accounting for rate limit decisions."""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class UsageEvent(str, Enum):
    """Kinds of enforcement events that are counted."""

    ALLOWED = "allowed"
    DENIED = "denied"
    BYPASSED = "bypassed"
    SKIPPED = "skipped"
    FAILED_OPEN = "failed_open"
    FALLBACK = "fallback"
    QUOTA_EXCEEDED = "quota_exceeded"


class UsageSnapshot(BaseModel):
    """Counters of all operations at one point in time."""

    since: datetime = Field(..., description="When counting started")
    operations: dict[str, dict[str, int]] = Field(
        default_factory=dict, description="Event counts keyed by operation"
    )
    totals: dict[str, int] = Field(default_factory=dict, description="Event counts summed")


class RateLimitUsageRecorder:
    """Per-operation counters of enforcement outcomes.

    Counters live in process memory and cover only this instance. They are
    meant for the admin stats endpoint and for spotting a fallback period,
    not for billing.
    """

    def __init__(self) -> None:
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._since = datetime.now(timezone.utc)

    def record(self, operation: str, event: UsageEvent, value: int = 1) -> None:
        """Count an event for an operation.

        Args:
            operation: Operation name.
            event: Kind of event.
            value: Amount to add (default: 1).
        """
        self._counters[operation][event.value] += value
        logger.debug(
            "Recorded rate limit event: operation=%s, event=%s", operation, event.value
        )

    def get_counts(self, operation: str) -> dict[str, int]:
        """Event counts for one operation (zeros if never seen)."""
        counts = self._counters.get(operation, {})
        return {event.value: counts.get(event.value, 0) for event in UsageEvent}

    def snapshot(self) -> UsageSnapshot:
        """Copy of all counters."""
        operations = {op: self.get_counts(op) for op in sorted(self._counters)}
        totals = {event.value: 0 for event in UsageEvent}
        for counts in operations.values():
            for event, value in counts.items():
                totals[event] += value
        return UsageSnapshot(since=self._since, operations=operations, totals=totals)

    def reset(self) -> None:
        """Clear all counters."""
        self._counters.clear()
        self._since = datetime.now(timezone.utc)
