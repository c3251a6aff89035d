"""API routers for rate limit and quota administration."""

import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from gateway_guard.config import Settings, get_settings
from gateway_guard.ratelimit.alerts import RateLimitAlert
from gateway_guard.ratelimit.exceptions import StoreUnavailableError
from gateway_guard.ratelimit.models import SubscriptionTier
from gateway_guard.ratelimit.quota import QuotaUsage
from gateway_guard.ratelimit.service import RateLimitService, get_rate_limit_service
from gateway_guard.ratelimit.usage import UsageSnapshot

logger = logging.getLogger(__name__)


async def require_admin_key(
    settings: Annotated[Settings, Depends(get_settings)],
    x_admin_key: Annotated[str | None, Header()] = None,
) -> None:
    """Reject requests without the configured admin key.

    Raises:
        HTTPException: If the key is missing or wrong.
    """
    if not x_admin_key:
        raise HTTPException(status_code=401, detail="Missing X-Admin-Key header")
    if not settings.admin_api_key or not secrets.compare_digest(
        x_admin_key, settings.admin_api_key
    ):
        raise HTTPException(status_code=403, detail="Invalid admin key")


router = APIRouter(
    prefix="/admin/rate-limits",
    tags=["rate-limits"],
    dependencies=[Depends(require_admin_key)],
)


class ResetResponse(BaseModel):
    """Rate limit reset response."""

    subject_id: str = Field(..., description="User ID or client IP")
    operation: str = Field(..., description="Operation name")
    deleted: int = Field(..., description="Number of cleared counters and buckets")


class WindowStatus(BaseModel):
    """Current count of one window."""

    count: int = Field(..., description="Requests counted in the current window")
    limit: int = Field(..., description="Base limit of the window")
    reset_time: int = Field(..., description="Epoch milliseconds when the window ends")


class StatusResponse(BaseModel):
    """Rate limit status response."""

    subject_id: str = Field(..., description="User ID or client IP")
    operation: str = Field(..., description="Operation name")
    algorithm: str | None = Field(None, description="Algorithm of the operation's policy")
    store_available: bool = Field(..., description="Whether the shared store answered")
    windows: dict[str, WindowStatus] = Field(
        default_factory=dict, description="Current window counts by window name"
    )


@router.get(
    "/stats",
    response_model=UsageSnapshot,
    summary="Get enforcement counters",
    description="Get per-operation counts of enforcement outcomes on this instance.",
)
async def get_stats(
    service: Annotated[RateLimitService, Depends(get_rate_limit_service)],
) -> UsageSnapshot:
    """Get enforcement counters.

    Args:
        service: Rate limit service.

    Returns:
        Usage snapshot.
    """
    return service.recorder.snapshot()


@router.get(
    "/alerts",
    response_model=list[RateLimitAlert],
    summary="Get recent usage alerts",
    description="Get the usage alerts this instance raised, newest last.",
)
async def get_alerts(
    service: Annotated[RateLimitService, Depends(get_rate_limit_service)],
) -> list[RateLimitAlert]:
    return service.monitor.recent()


@router.get(
    "/{subject_id}/{operation}",
    response_model=StatusResponse,
    summary="Get rate limit status",
)
async def get_status(
    subject_id: str,
    operation: str,
    service: Annotated[RateLimitService, Depends(get_rate_limit_service)],
) -> StatusResponse:
    """Get current window counts of a subject for an operation."""
    if operation not in service.policies:
        raise HTTPException(status_code=404, detail=f"No rate limit policy for {operation}")

    status = await service.get_status(subject_id, operation)
    return StatusResponse.model_validate(status)


@router.delete(
    "/{subject_id}/{operation}",
    response_model=ResetResponse,
    summary="Reset rate limits",
    description="Clear all counters and the token bucket of a subject for an operation.",
)
async def reset_limits(
    subject_id: str,
    operation: str,
    service: Annotated[RateLimitService, Depends(get_rate_limit_service)],
) -> ResetResponse:
    """Reset rate limits of a subject for an operation.

    Args:
        subject_id: User ID or client IP.
        operation: Operation name.
        service: Rate limit service.

    Returns:
        Number of cleared entries.

    Raises:
        HTTPException: If the shared store could not be cleared.
    """
    try:
        deleted = await service.reset_limits(subject_id, operation)
    except StoreUnavailableError as e:
        logger.error("Failed to reset rate limits for %s:%s: %s", subject_id, operation, e)
        raise HTTPException(
            status_code=503, detail="Shared counter store unavailable"
        ) from e

    return ResetResponse(subject_id=subject_id, operation=operation, deleted=deleted)


quota_router = APIRouter(
    prefix="/admin/quotas",
    tags=["quotas"],
    dependencies=[Depends(require_admin_key)],
)


class QuotaResetResponse(BaseModel):
    """Quota usage reset response."""

    subject_id: str = Field(..., description="User ID")
    deleted: int = Field(..., description="Number of cleared quota counters")


@quota_router.get(
    "/{subject_id}",
    response_model=QuotaUsage,
    summary="Get quota usage",
    description="Get daily and monthly quota usage of a user against a tier's allowances.",
)
async def get_quota_usage(
    subject_id: str,
    service: Annotated[RateLimitService, Depends(get_rate_limit_service)],
    tier: SubscriptionTier = SubscriptionTier.FREE,
) -> QuotaUsage:
    """Get quota usage of a user.

    Args:
        subject_id: User ID.
        service: Rate limit service.
        tier: Tier whose allowances are reported.

    Returns:
        Current usage per kind and period.
    """
    return await service.quotas.get_current_usage(subject_id, tier)


@quota_router.delete(
    "/{subject_id}",
    response_model=QuotaResetResponse,
    summary="Reset quota usage",
)
async def reset_quota_usage(
    subject_id: str,
    service: Annotated[RateLimitService, Depends(get_rate_limit_service)],
) -> QuotaResetResponse:
    """Clear every quota counter of a user."""
    try:
        deleted = await service.quotas.reset_usage(subject_id)
    except StoreUnavailableError as e:
        logger.error("Failed to reset quota usage for %s: %s", subject_id, e)
        raise HTTPException(
            status_code=503, detail="Shared counter store unavailable"
        ) from e

    return QuotaResetResponse(subject_id=subject_id, deleted=deleted)
