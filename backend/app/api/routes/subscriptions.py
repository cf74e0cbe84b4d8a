"""
Subscription API Routes

Checkout session creation for plan purchases and user-initiated
cancellation. Activation happens when the resulting webhooks arrive (or on
reconciliation); a cancellation applies the provider's answer right away.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.dependencies import get_billing_services, get_current_user_id
from app.domain.billing_events import EventDecodeError, ProviderSubscription
from app.domain.state_machine import SubscriptionChange
from app.domain.subscription import (
    CancelSubscriptionResponse,
    CheckoutResponse,
    CreateCheckoutRequest,
    PlanTier,
    utc_now,
)
from app.infrastructure.exceptions import (
    ConfigurationError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from app.infrastructure.services.billing_services import BillingServices


logger = logging.getLogger(__name__)

router = APIRouter(tags=["Subscriptions"])


@router.post("/subscriptions/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    request: CreateCheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services),
):
    """
    Create a Stripe Checkout session for subscription purchase.

    Args:
        request: Checkout request with tier, interval and redirect URLs

    Returns:
        CheckoutResponse with checkout URL and session ID
    """
    if request.tier == PlanTier.FREE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot purchase free tier"
        )

    price_id = services.settings.price_id_for(request.tier.value, request.interval)
    if not price_id:
        raise ConfigurationError(
            f"No price configured for {request.tier.value}/{request.interval}",
            missing_keys=[f"STRIPE_PRICE_ID_{request.tier.value.upper()}_{request.interval.upper()}LY"],
        )

    user = await services.users.get(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found", operation="checkout", table="users")

    customer_id = await services.provider.get_or_create_customer(
        user_id=user_id,
        email=user.email,
        existing_customer_id=user.stripe_customer_id,
    )
    if customer_id != user.stripe_customer_id:
        await services.users.link_customer(user_id, customer_id)

    session = await services.provider.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        tier=request.tier.value,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
        user_id=user_id,
    )
    await services.users.remember_checkout_session(user_id, session["id"])

    logger.info(f"Created checkout session {session['id']} for user {user_id}")

    return CheckoutResponse(
        checkout_url=session["url"],
        session_id=session["id"],
    )


@router.delete("/subscriptions/{subscription_id}", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    subscription_id: str,
    at_period_end: bool = Query(default=True, alias="atPeriodEnd"),
    reason: Optional[str] = Query(default=None, max_length=500),
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services),
):
    """
    Cancel one of the caller's subscriptions.

    By default the subscription stays active until the end of the paid
    period; `atPeriodEnd=false` ends it immediately. The updated provider
    state goes through the Subscription Store like any other change.
    """
    stored = await services.subscriptions.get_by_remote_id(subscription_id)
    if stored is None or stored.user_id != user_id:
        raise NotFoundError(
            f"Subscription {subscription_id} not found",
            operation="cancel",
            table="subscriptions",
        )
    if stored.is_terminal:
        raise ValidationError(
            f"Subscription {subscription_id} is already {stored.status.value}",
            details={"status": stored.status.value},
        )

    raw = await services.provider.cancel_subscription(
        subscription_id,
        at_period_end=at_period_end,
        reason=reason,
    )
    if raw is None:
        raise NotFoundError(f"Subscription {subscription_id} not found at provider", operation="cancel")

    try:
        snapshot = ProviderSubscription.from_stripe(raw)
    except EventDecodeError as e:
        raise ProviderError(f"Provider returned a malformed subscription: {e}", operation="cancel") from e

    result = await services.store.apply_event(SubscriptionChange.from_snapshot(
        snapshot,
        utc_now(),
        source="user_cancel",
        authoritative=True,
        user_id=user_id,
    ))
    subscription = result.subscription

    logger.info(
        f"User {user_id} cancelled {subscription_id} (at_period_end={at_period_end}): "
        f"{result.outcome.value}, status={subscription.status.value}"
    )

    return CancelSubscriptionResponse(
        remote_subscription_id=subscription.remote_subscription_id,
        status=subscription.status,
        cancel_at_period_end=subscription.billing.cancel_at_period_end,
        current_period_end=subscription.billing.current_period_end,
        outcome=result.outcome.value,
    )
