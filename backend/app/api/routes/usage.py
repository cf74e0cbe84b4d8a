"""
Usage API Routes

Quota reads and check-and-increment for the authenticated user.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from app.api.dependencies import get_billing_services, get_current_user_id
from app.domain.subscription import (
    QuotaExceededResponse,
    TrackUsageRequest,
    TrackUsageResponse,
    UsageLimitsResponse,
    summarize,
)
from app.infrastructure.services.billing_services import BillingServices


logger = logging.getLogger(__name__)

router = APIRouter(tags=["Usage"])


def _require_self(path_user_id: str, user_id: str) -> None:
    """Users may only read and spend their own quota."""
    if path_user_id != user_id:
        logger.warning(f"User {user_id} attempted to access usage of {path_user_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot access another user's usage"
        )


@router.get("/users/{id}/usage/limits", response_model=UsageLimitsResponse)
async def get_usage_limits(
    id: str,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services),
):
    """Plan, limits, usage so far and remaining units for each resource."""
    _require_self(id, user_id)
    return await services.quota.get_limits(id)


@router.post(
    "/users/{id}/usage/track",
    response_model=TrackUsageResponse,
    responses={402: {"model": QuotaExceededResponse}},
)
async def track_usage(
    id: str,
    request: TrackUsageRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services),
):
    """
    Record resource consumption if the plan allows it.

    Returns:
        200 with updated usage, or 402 when the increment would exceed
        the plan limit (usage unchanged)
    """
    _require_self(id, user_id)

    result = await services.quota.check_and_increment(id, request.type, request.amount)

    if not result.allowed:
        body = QuotaExceededResponse(
            message=f"You have reached your {request.type.value} limit for this period",
            type=result.kind,
            limit=result.limit,
            used=result.used,
            requested=result.requested,
            plan=result.tier,
        )
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content=body.model_dump(mode="json", by_alias=True),
        )

    subscription = None
    if result.remote_subscription_id:
        stored = await services.subscriptions.get_by_remote_id(result.remote_subscription_id)
        subscription = summarize(stored)

    return TrackUsageResponse(
        usage=result.usage,
        remaining=result.remaining,
        subscription=subscription,
    )
