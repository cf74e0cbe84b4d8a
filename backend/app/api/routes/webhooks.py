"""
Billing Webhook Handler

Receives Stripe webhook deliveries for subscription lifecycle management.
Processing is idempotent and backed by the webhook event log (survives
restarts).

Response contract:
- 200: processed, already processed, ignored or dead-lettered
- 400: signature, payload or schema version rejected (nothing mutated)
- 503: transient storage failure, or the same event is still in flight;
  the provider redelivers
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from app.api.dependencies import get_billing_services
from app.infrastructure.services.billing_services import BillingServices


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/billing")
async def billing_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    services: BillingServices = Depends(get_billing_services),
):
    """
    Handle Stripe webhook events.

    Verifies the signature on the raw body, then hands the decoded event to
    the event router. Errors are mapped to status codes by the application
    exception handlers.
    """
    payload = await request.body()

    verified = services.verifier.verify(payload, stripe_signature)
    logger.info(f"Received webhook event: {verified.event.event_type} ({verified.event.event_id})")

    result = await services.router.ingest(verified)

    body = {"received": True}
    if result.status != "processed":
        body["status"] = result.status
    return body
