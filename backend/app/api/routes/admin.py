"""
Admin Routes for Billing Maintenance

Operator-triggered reconciliation, the heal job and webhook dead-letter
inspection and replay. Protected by API key authentication.
"""

import logging

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import get_billing_services, verify_admin_api_key
from app.domain.subscription import (
    HealRequest,
    ReplayEventRequest,
    SyncSubscriptionsRequest,
)
from app.domain.webhook_event import WebhookEventRecord, WebhookEventStatus
from app.infrastructure.services.billing_services import BillingServices
from app.infrastructure.services.event_router import IngestResult
from app.infrastructure.services.reconciler import HealReport, ReconciliationReport


logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(verify_admin_api_key)]  # Protect ALL admin routes
)


@router.post("/subscriptions/sync", response_model=ReconciliationReport)
async def sync_subscriptions(
    request: SyncSubscriptionsRequest,
    services: BillingServices = Depends(get_billing_services),
):
    """
    Reconcile one user's subscriptions with Stripe.

    Pulls provider state (from the session handle when given, else the
    user's customer) and applies it through the subscription store.
    """
    logger.info(f"Admin sync requested for user {request.user_id} (handle={request.session_handle})")
    return await services.reconciler.reconcile(
        request.user_id,
        handle=request.session_handle,
        cancel_if_missing=request.cancel_if_missing,
    )


@router.post("/subscriptions/heal", response_model=HealReport)
async def heal_subscriptions(
    request: HealRequest,
    services: BillingServices = Depends(get_billing_services),
):
    """Reconcile users with a completed checkout but no entitled subscription."""
    return await services.reconciler.heal_missing(request.limit)


@router.get("/webhook-events", response_model=list[WebhookEventRecord])
async def list_webhook_events(
    status: WebhookEventStatus = Query(default=WebhookEventStatus.DEAD_LETTER),
    limit: int = Query(default=50, ge=1, le=500),
    services: BillingServices = Depends(get_billing_services),
):
    """List webhook events in a processing state (dead letters by default)."""
    return await services.event_log.list_by_status(status, limit)


@router.post("/webhook-events/{event_id}/replay", response_model=IngestResult)
async def replay_webhook_event(
    event_id: str,
    request: ReplayEventRequest,
    services: BillingServices = Depends(get_billing_services),
):
    """
    Re-run a failed or dead-lettered event from its stored payload.

    `userId` attaches an owner when the event could not be resolved.
    """
    return await services.router.replay(event_id, request.user_id)
