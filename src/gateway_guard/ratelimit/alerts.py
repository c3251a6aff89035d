"""Usage alerts raised from enforcement outcomes.

Alerts are log records at warning level (with structured fields for the
JSON log format) plus an event on the current trace span. Identical alerts
are suppressed for a cooldown period.
"""

import logging
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from gateway_guard.config import Settings, get_settings
from gateway_guard.ratelimit.algorithms import now_ms
from gateway_guard.ratelimit.models import RateLimitDecision
from gateway_guard.telemetry import add_span_event

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    """Conditions that raise an alert."""

    HIGH_USAGE = "HIGH_USAGE"
    USER_RATE_LIMITED = "USER_RATE_LIMITED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    GLOBAL_RATE_LIMITS = "GLOBAL_RATE_LIMITS"


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    WARNING = "warning"
    CRITICAL = "critical"


class RateLimitAlert(BaseModel):
    """One raised alert."""

    type: AlertType
    severity: AlertSeverity
    operation: str | None = None
    subject_id: str | None = None
    timestamp: datetime
    details: dict[str, Any] = Field(default_factory=dict)


class UsageAlertMonitor:
    """Watches enforcement outcomes and raises usage alerts."""

    HISTORY_SIZE = 100

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], int] | None = None,
    ):
        """Initialize the monitor.

        Args:
            settings: Application settings with the alert thresholds.
            clock: Time source in epoch milliseconds.
        """
        self._settings = settings or get_settings()
        self._clock = clock if clock is not None else now_ms
        self._last_sent: dict[str, int] = {}
        self._global_hits: deque[int] = deque()
        self._history: deque[RateLimitAlert] = deque(maxlen=self.HISTORY_SIZE)

    def observe(
        self,
        operation: str,
        subject_id: str | None,
        decision: RateLimitDecision | None,
        global_limit: bool = False,
        quota_exceeded: bool = False,
    ) -> list[RateLimitAlert]:
        """Raise the alerts one enforcement outcome calls for.

        Args:
            operation: Operation name.
            subject_id: User ID or client IP the decision was keyed on.
            decision: Governing decision, None when nothing was decided.
            global_limit: Whether the decision came from the global ceiling.
            quota_exceeded: Whether a usage quota denied the request.

        Returns:
            Alerts sent (after cooldown suppression).
        """
        if not self._settings.rate_limit_alerts_enabled or decision is None:
            return []

        now = self._clock()
        candidates: list[RateLimitAlert] = []

        if decision.allowed:
            if decision.limit > 0:
                ratio = (decision.limit - decision.remaining) / decision.limit
                if ratio >= self._settings.rate_limit_alert_high_usage:
                    critical = ratio >= self._settings.rate_limit_alert_critical_usage
                    candidates.append(
                        self._alert(
                            AlertType.HIGH_USAGE,
                            AlertSeverity.CRITICAL if critical else AlertSeverity.WARNING,
                            now,
                            operation,
                            subject_id,
                            usage_ratio=round(ratio, 3),
                            remaining=decision.remaining,
                            limit=decision.limit,
                        )
                    )
        elif global_limit:
            global_alert = self._count_global_hit(operation, now)
            if global_alert is not None:
                candidates.append(global_alert)
        elif quota_exceeded:
            candidates.append(
                self._alert(
                    AlertType.QUOTA_EXCEEDED,
                    AlertSeverity.WARNING,
                    now,
                    operation,
                    subject_id,
                    limit=decision.limit,
                    reset_time=decision.reset_time,
                )
            )
        elif subject_id:
            candidates.append(
                self._alert(
                    AlertType.USER_RATE_LIMITED,
                    AlertSeverity.WARNING,
                    now,
                    operation,
                    subject_id,
                    limit=decision.limit,
                    retry_after=decision.retry_after,
                )
            )

        return [alert for alert in candidates if self._send(alert, now)]

    def recent(self) -> list[RateLimitAlert]:
        """Alerts sent by this instance, newest last."""
        return list(self._history)

    def _count_global_hit(self, operation: str, now: int) -> RateLimitAlert | None:
        window_ms = self._settings.rate_limit_alert_global_window_seconds * 1000
        self._global_hits.append(now)
        while self._global_hits and self._global_hits[0] <= now - window_ms:
            self._global_hits.popleft()

        if len(self._global_hits) < self._settings.rate_limit_alert_global_hits:
            return None
        return self._alert(
            AlertType.GLOBAL_RATE_LIMITS,
            AlertSeverity.CRITICAL,
            now,
            None,
            None,
            blocked_count=len(self._global_hits),
            window_seconds=self._settings.rate_limit_alert_global_window_seconds,
            last_operation=operation,
        )

    @staticmethod
    def _alert(
        alert_type: AlertType,
        severity: AlertSeverity,
        now: int,
        operation: str | None,
        subject_id: str | None,
        **details: Any,
    ) -> RateLimitAlert:
        return RateLimitAlert(
            type=alert_type,
            severity=severity,
            operation=operation,
            subject_id=subject_id,
            timestamp=datetime.fromtimestamp(now / 1000, tz=timezone.utc),
            details=details,
        )

    def _send(self, alert: RateLimitAlert, now: int) -> bool:
        key = f"{alert.type.value}:{alert.operation or 'global'}:{alert.subject_id or 'system'}"
        cooldown_ms = self._settings.rate_limit_alert_cooldown_seconds * 1000
        last = self._last_sent.get(key)
        if last is not None and now - last < cooldown_ms:
            return False
        self._last_sent[key] = now

        self._history.append(alert)
        logger.warning(
            "Rate limit alert %s (%s) for %s:%s %s",
            alert.type.value,
            alert.severity.value,
            alert.operation or "global",
            alert.subject_id or "system",
            alert.details,
            extra={
                "alert_type": alert.type.value,
                "severity": alert.severity.value,
                "operation": alert.operation,
                "subject_id": alert.subject_id,
            },
        )
        add_span_event(
            "rate_limit.alert",
            {
                "rate_limit.alert.type": alert.type.value,
                "rate_limit.alert.severity": alert.severity.value,
                "rate_limit.operation": alert.operation,
                "rate_limit.subject_id": alert.subject_id,
            },
        )
        return True
