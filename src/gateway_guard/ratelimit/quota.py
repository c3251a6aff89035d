"""Per-tier daily and monthly usage quotas.

Quota counters live in the shared counter store next to the rate limit
counters, one counter per subject, kind and calendar period (UTC). Quotas
are not enforced while the shared store is unreachable: a process-local
count of a monthly allowance would mean nothing.
"""

import logging
import math
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from gateway_guard.config import Settings, get_settings
from gateway_guard.ratelimit.algorithms import now_ms
from gateway_guard.ratelimit.exceptions import StoreUnavailableError
from gateway_guard.ratelimit.models import QuotaKind, SubscriptionTier, quota_key_prefix
from gateway_guard.ratelimit.store import CounterStore, RedisCounterStore

logger = logging.getLogger(__name__)

UNLIMITED = -1

# Extra lifetime of a period counter after the period ends
_COUNTER_GRACE_SECONDS = 86_400


class QuotaPeriod(str, Enum):
    """Calendar period a quota counter covers."""

    DAY = "day"
    MONTH = "month"


class QuotaLimits(BaseModel):
    """Quota allowances of one subscription tier (-1 means unlimited)."""

    model_config = ConfigDict(frozen=True)

    daily_messages: int = Field(..., ge=UNLIMITED)
    daily_tokens: int = Field(..., ge=UNLIMITED)
    monthly_messages: int = Field(..., ge=UNLIMITED)
    monthly_tokens: int = Field(..., ge=UNLIMITED)
    daily_document_uploads: int = Field(..., ge=UNLIMITED)

    def limits_for(self, kind: QuotaKind) -> dict[QuotaPeriod, int]:
        """Allowance per period for a kind, daily first."""
        if kind is QuotaKind.MESSAGES:
            return {
                QuotaPeriod.DAY: self.daily_messages,
                QuotaPeriod.MONTH: self.monthly_messages,
            }
        if kind is QuotaKind.TOKENS:
            return {
                QuotaPeriod.DAY: self.daily_tokens,
                QuotaPeriod.MONTH: self.monthly_tokens,
            }
        return {QuotaPeriod.DAY: self.daily_document_uploads}


DEFAULT_QUOTA_LIMITS: dict[SubscriptionTier, QuotaLimits] = {
    SubscriptionTier.FREE: QuotaLimits(
        daily_messages=50,
        daily_tokens=100_000,
        monthly_messages=1_000,
        monthly_tokens=2_000_000,
        daily_document_uploads=10,
    ),
    SubscriptionTier.PRO: QuotaLimits(
        daily_messages=500,
        daily_tokens=1_000_000,
        monthly_messages=15_000,
        monthly_tokens=30_000_000,
        daily_document_uploads=100,
    ),
    SubscriptionTier.ENTERPRISE: QuotaLimits(
        daily_messages=UNLIMITED,
        daily_tokens=UNLIMITED,
        monthly_messages=UNLIMITED,
        monthly_tokens=UNLIMITED,
        daily_document_uploads=UNLIMITED,
    ),
}

_KIND_LABELS = {
    QuotaKind.MESSAGES: "message",
    QuotaKind.TOKENS: "token",
    QuotaKind.DOCUMENT_UPLOADS: "document upload",
}


def period_bounds(period: QuotaPeriod, now: int) -> tuple[str, int]:
    """Label of the UTC period containing ``now`` and when it ends.

    Returns:
        Tuple of (label such as ``2023-11-14`` or ``2023-11``, end in epoch ms).
    """
    moment = datetime.fromtimestamp(now / 1000, tz=timezone.utc)
    if period is QuotaPeriod.DAY:
        start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1)
        label = start.strftime("%Y-%m-%d")
    else:
        start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        label = start.strftime("%Y-%m")
    return label, int(end.timestamp() * 1000)


class QuotaEntry(BaseModel):
    """Usage of one kind in one period."""

    kind: QuotaKind
    period: QuotaPeriod
    used: int = Field(..., description="Amount used in the current period")
    limit: int = Field(..., description="Allowance, -1 when unlimited")
    remaining: int = Field(..., description="Amount left, -1 when unlimited")
    reset_time: int = Field(..., description="Epoch milliseconds when the period ends")


class QuotaCheck(BaseModel):
    """Result of a quota check."""

    allowed: bool
    kind: QuotaKind
    tier: SubscriptionTier
    period: QuotaPeriod | None = Field(
        None, description="Period that denied, or the tightest limited period"
    )
    limit: int = Field(UNLIMITED, description="Allowance of that period")
    remaining: int = Field(UNLIMITED, description="Amount left in that period")
    reset_time: int | None = Field(None, description="Epoch milliseconds when it ends")
    error: str | None = Field(None, description="Why the check was skipped")

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def message(self) -> str:
        period = "Daily" if self.period is QuotaPeriod.DAY else "Monthly"
        return (
            f"{period} {_KIND_LABELS[self.kind]} quota exceeded. "
            "Upgrade your plan for higher limits."
        )


class QuotaUsage(BaseModel):
    """Current quota usage of a subject."""

    subject_id: str
    tier: SubscriptionTier
    store_available: bool
    entries: list[QuotaEntry] = Field(default_factory=list)


def _remaining(limit: int, used: int) -> int:
    return UNLIMITED if limit == UNLIMITED else max(0, limit - used)


class QuotaService:
    """Counts usage per tier quota and decides whether more is allowed.

    ``consume`` counts first and takes the amount back when a period is
    over its allowance, so concurrent requests can never push usage past a
    quota. ``check_quota`` and ``record_usage`` are the two halves for
    callers that only learn the amount afterwards (e.g. model tokens).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        store: CounterStore | None = None,
        limits: Mapping[SubscriptionTier, QuotaLimits] | None = None,
        clock: Callable[[], int] | None = None,
    ):
        """Initialize quota service.

        Args:
            settings: Application settings.
            store: Shared counter store (Redis from settings if not provided).
            limits: Allowances per tier.
            clock: Time source in epoch milliseconds.
        """
        self._settings = settings or get_settings()
        self._store = store if store is not None else RedisCounterStore(self._settings)
        self._limits = dict(limits) if limits is not None else dict(DEFAULT_QUOTA_LIMITS)
        self._clock = clock if clock is not None else now_ms
        self._prefix = self._settings.rate_limit_key_prefix

    def limits_for(self, tier: SubscriptionTier) -> QuotaLimits:
        """Allowances of a tier (free tier allowances if unknown)."""
        return self._limits.get(tier, self._limits[SubscriptionTier.FREE])

    def _key(self, subject_id: str, kind: QuotaKind, period: QuotaPeriod, label: str) -> str:
        return f"{quota_key_prefix(self._prefix, subject_id)}{kind.value}:{period.value}:{label}"

    @staticmethod
    def _ttl_seconds(end: int, now: int) -> int:
        return max(1, math.ceil((end - now) / 1000)) + _COUNTER_GRACE_SECONDS

    def _skip(self, subject_id: str) -> bool:
        return subject_id in self._settings.rate_limit_bypass_user_ids

    @staticmethod
    def _governing(
        kind: QuotaKind, tier: SubscriptionTier, entries: list[QuotaEntry]
    ) -> QuotaCheck:
        """Admitting result reporting the limited period with the least left."""
        limited = [e for e in entries if e.limit != UNLIMITED]
        if not limited:
            return QuotaCheck(allowed=True, kind=kind, tier=tier)
        tightest = min(limited, key=lambda e: e.remaining)
        return QuotaCheck(
            allowed=True,
            kind=kind,
            tier=tier,
            period=tightest.period,
            limit=tightest.limit,
            remaining=tightest.remaining,
            reset_time=tightest.reset_time,
        )

    async def check_quota(
        self,
        subject_id: str,
        tier: SubscriptionTier,
        kind: QuotaKind,
        amount: int = 1,
        now: int | None = None,
    ) -> QuotaCheck:
        """Check whether ``amount`` more fits the subject's quotas.

        Periods are checked daily first; the first one that would be
        exceeded denies. Errors admit.

        Args:
            subject_id: User ID.
            tier: Subscription tier of the subject.
            kind: What is being counted.
            amount: Amount the caller is about to use.
            now: Current time in epoch milliseconds (clock if omitted).

        Returns:
            Quota check result.
        """
        now = self._clock() if now is None else now
        if self._skip(subject_id):
            return QuotaCheck(allowed=True, kind=kind, tier=tier)

        try:
            if not await self._store.is_available():
                return QuotaCheck(
                    allowed=True, kind=kind, tier=tier, error="shared counter store unavailable"
                )
            entries = []
            for period, limit in self.limits_for(tier).limits_for(kind).items():
                label, end = period_bounds(period, now)
                used = await self._store.get_count(self._key(subject_id, kind, period, label))
                if limit != UNLIMITED and used + amount > limit:
                    return QuotaCheck(
                        allowed=False,
                        kind=kind,
                        tier=tier,
                        period=period,
                        limit=limit,
                        remaining=_remaining(limit, used),
                        reset_time=end,
                    )
                entries.append(
                    QuotaEntry(
                        kind=kind,
                        period=period,
                        used=used,
                        limit=limit,
                        remaining=_remaining(limit, used),
                        reset_time=end,
                    )
                )
        except StoreUnavailableError as e:
            logger.warning("Quota check failed for %s, allowing: %s", subject_id, e)
            return QuotaCheck(allowed=True, kind=kind, tier=tier, error=str(e))

        return self._governing(kind, tier, entries)

    async def record_usage(
        self,
        subject_id: str,
        kind: QuotaKind,
        amount: int = 1,
        now: int | None = None,
    ) -> None:
        """Add ``amount`` to the subject's daily and monthly counters.

        Store failures are logged; the usage is then not counted.

        Args:
            subject_id: User ID.
            kind: What was used.
            amount: Amount used.
            now: Current time in epoch milliseconds (clock if omitted).
        """
        now = self._clock() if now is None else now
        if self._skip(subject_id) or amount <= 0:
            return

        try:
            for period in QuotaPeriod:
                label, end = period_bounds(period, now)
                await self._store.increment(
                    self._key(subject_id, kind, period, label),
                    self._ttl_seconds(end, now),
                    amount,
                )
        except StoreUnavailableError as e:
            logger.warning(
                "Could not record %d %s for %s: %s", amount, kind.value, subject_id, e
            )

    async def consume(
        self,
        subject_id: str,
        tier: SubscriptionTier,
        kind: QuotaKind,
        amount: int = 1,
        now: int | None = None,
    ) -> QuotaCheck:
        """Count ``amount`` and admit it only if every period stays within quota.

        Args:
            subject_id: User ID.
            tier: Subscription tier of the subject.
            kind: What is being used.
            amount: Amount this request uses.
            now: Current time in epoch milliseconds (clock if omitted).

        Returns:
            Quota check result; a denied amount is not counted.
        """
        now = self._clock() if now is None else now
        if self._skip(subject_id):
            return QuotaCheck(allowed=True, kind=kind, tier=tier)

        limits = self.limits_for(tier).limits_for(kind)
        counted: list[tuple[str, int]] = []
        try:
            if not await self._store.is_available():
                return QuotaCheck(
                    allowed=True, kind=kind, tier=tier, error="shared counter store unavailable"
                )

            entries = []
            denial: QuotaEntry | None = None
            for period in QuotaPeriod:
                label, end = period_bounds(period, now)
                key = self._key(subject_id, kind, period, label)
                ttl = self._ttl_seconds(end, now)
                used = await self._store.increment(key, ttl, amount)
                counted.append((key, ttl))
                limit = limits.get(period, UNLIMITED)
                entry = QuotaEntry(
                    kind=kind,
                    period=period,
                    used=used,
                    limit=limit,
                    remaining=_remaining(limit, used),
                    reset_time=end,
                )
                entries.append(entry)
                if denial is None and limit != UNLIMITED and used > limit:
                    denial = entry

            if denial is not None:
                for key, ttl in counted:
                    await self._store.increment(key, ttl, -amount)
                return QuotaCheck(
                    allowed=False,
                    kind=kind,
                    tier=tier,
                    period=denial.period,
                    limit=denial.limit,
                    remaining=_remaining(denial.limit, denial.used - amount),
                    reset_time=denial.reset_time,
                )
        except StoreUnavailableError as e:
            logger.warning("Quota consume failed for %s, allowing: %s", subject_id, e)
            return QuotaCheck(allowed=True, kind=kind, tier=tier, error=str(e))

        return self._governing(kind, tier, entries)

    async def get_current_usage(
        self,
        subject_id: str,
        tier: SubscriptionTier,
        now: int | None = None,
    ) -> QuotaUsage:
        """Usage of every kind and period for a subject.

        Args:
            subject_id: User ID.
            tier: Subscription tier the allowances are taken from.
            now: Current time in epoch milliseconds (clock if omitted).

        Returns:
            Current usage, without entries if the store is unavailable.
        """
        now = self._clock() if now is None else now
        usage = QuotaUsage(subject_id=subject_id, tier=tier, store_available=False)
        if not await self._store.is_available():
            return usage

        tier_limits = self.limits_for(tier)
        entries = []
        try:
            for kind in QuotaKind:
                for period, limit in tier_limits.limits_for(kind).items():
                    label, end = period_bounds(period, now)
                    used = await self._store.get_count(
                        self._key(subject_id, kind, period, label)
                    )
                    entries.append(
                        QuotaEntry(
                            kind=kind,
                            period=period,
                            used=used,
                            limit=limit,
                            remaining=_remaining(limit, used),
                            reset_time=end,
                        )
                    )
        except StoreUnavailableError as e:
            logger.warning("Could not read quota usage for %s: %s", subject_id, e)
            return usage

        usage.store_available = True
        usage.entries = entries
        return usage

    async def reset_usage(self, subject_id: str) -> int:
        """Delete every quota counter of a subject.

        Raises:
            StoreUnavailableError: If the shared store could not be cleared.
        """
        deleted = await self._store.delete_prefix(quota_key_prefix(self._prefix, subject_id))
        logger.info("Quota usage reset for %s (%d counters)", subject_id, deleted)
        return deleted
