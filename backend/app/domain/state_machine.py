"""
Subscription State Machine

Pure transition rules for the canonical subscription record. No I/O:
the store reads the current record, asks `plan_transition` what the next
record should be, and persists the answer.

Rules applied in order:
1. Ordering: a change older than the stored state is ignored (stale).
2. Update in place: status and billing come from the incoming state.
3. Idempotency: identical status, billing and price is a no-op.
4. Reset: a new current_period_start zeroes usage and stamps last_reset.
"""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel

from app.domain.billing_events import InvoiceEvent, ProviderSubscription
from app.domain.plan_catalog import IPlanCatalog
from app.domain.subscription import (
    ENTITLED_STATUSES,
    BillingInfo,
    DomainModel,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    UsageCounters,
)


S = SubscriptionStatus

# Transitions the provider is expected to report. Anything else is still
# applied (the provider is authoritative) but logged as unexpected.
ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.INCOMPLETE: frozenset({S.ACTIVE, S.TRIALING, S.INCOMPLETE_EXPIRED, S.CANCELED, S.PAUSED}),
    S.TRIALING: frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELED, S.PAUSED, S.UNPAID}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.CANCELED, S.PAUSED, S.UNPAID, S.TRIALING}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.CANCELED, S.UNPAID, S.PAUSED}),
    S.UNPAID: frozenset({S.ACTIVE, S.CANCELED, S.PAUSED}),
    S.PAUSED: frozenset({S.ACTIVE, S.TRIALING, S.CANCELED, S.PAST_DUE}),
    S.CANCELED: frozenset(),
    S.INCOMPLETE_EXPIRED: frozenset(),
}


def is_expected_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS.get(current, frozenset())


class ApplyOutcome(str, Enum):
    """What `apply_event` did with a change."""
    CREATED = "created"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    STALE = "stale"


class SubscriptionChange(DomainModel):
    """
    A provider-originated change to one subscription.

    Either carries a full `snapshot` (subscription events, provider pulls)
    or an invoice outcome from which the next status is derived.
    """
    remote_subscription_id: str
    version: datetime
    source: str = "webhook"
    authoritative: bool = False
    snapshot: Optional[ProviderSubscription] = None
    invoice_outcome: Optional[Literal["paid", "failed"]] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    user_id: Optional[str] = None
    tier_hint: Optional[PlanTier] = None
    event_id: Optional[str] = None

    @classmethod
    def from_snapshot(
        cls,
        snapshot: ProviderSubscription,
        version: datetime,
        **kwargs,
    ) -> "SubscriptionChange":
        return cls(
            remote_subscription_id=snapshot.id,
            version=version,
            snapshot=snapshot,
            **kwargs,
        )

    @classmethod
    def from_invoice(cls, event: InvoiceEvent) -> "SubscriptionChange":
        return cls(
            remote_subscription_id=event.remote_subscription_id,
            version=event.created,
            invoice_outcome=event.outcome,
            period_start=event.period_start,
            period_end=event.period_end,
            event_id=event.event_id,
        )


class TransitionPlan(BaseModel):
    """Result of planning a change against the stored record."""
    outcome: ApplyOutcome
    subscription: Subscription
    previous_status: Optional[SubscriptionStatus] = None
    reset_usage: bool = False
    unexpected: bool = False
    reason: Optional[str] = None


# =============================================================================
# Rules
# =============================================================================

def stale_reason(stored: Subscription, change: SubscriptionChange) -> Optional[str]:
    """Why a change must be ignored, or None if it may be applied."""
    if change.authoritative:
        return None

    snapshot = change.snapshot
    if snapshot is not None and stored.is_terminal and snapshot.status != stored.status:
        return f"subscription already {stored.status.value}"

    incoming_start = snapshot.current_period_start if snapshot is not None else None
    stored_start = stored.billing.current_period_start
    if incoming_start is not None and stored_start is not None:
        if incoming_start < stored_start:
            return "billing period older than stored period"
        if incoming_start > stored_start:
            return None

    if stored.version is not None and change.version < stored.version:
        return "event older than stored state"

    return None


def billing_from_snapshot(snapshot: ProviderSubscription) -> BillingInfo:
    return BillingInfo(
        current_period_start=snapshot.current_period_start,
        current_period_end=snapshot.current_period_end,
        trial_start=snapshot.trial_start,
        trial_end=snapshot.trial_end,
        cancel_at_period_end=snapshot.cancel_at_period_end,
        canceled_at=snapshot.canceled_at,
        cancellation_reason=snapshot.cancellation_reason,
    )


def derive_from_invoice(
    stored: Subscription,
    change: SubscriptionChange,
) -> tuple[SubscriptionStatus, BillingInfo]:
    """Next status and billing implied by an invoice outcome."""
    status = stored.status
    billing = stored.billing.model_copy()

    if change.invoice_outcome == "paid":
        if status in (S.INCOMPLETE, S.PAST_DUE, S.UNPAID):
            status = S.ACTIVE
        stored_start = billing.current_period_start
        if change.period_start is not None and (stored_start is None or change.period_start > stored_start):
            billing.current_period_start = change.period_start
            billing.current_period_end = change.period_end or billing.current_period_end
    elif change.invoice_outcome == "failed":
        if status in ENTITLED_STATUSES:
            status = S.PAST_DUE

    return status, billing


def build_subscription(
    user_id: str,
    change: SubscriptionChange,
    catalog: IPlanCatalog,
    now: datetime,
) -> Subscription:
    """First record for a subscription seen for the first time."""
    snapshot = change.snapshot
    if change.tier_hint is not None and change.tier_hint != PlanTier.FREE:
        plan = catalog.plan_for_tier(change.tier_hint, snapshot)
    else:
        plan = catalog.resolve(snapshot)

    return Subscription(
        user_id=user_id,
        remote_subscription_id=snapshot.id,
        remote_customer_id=snapshot.customer_id,
        remote_price_id=snapshot.price_id,
        remote_product_id=snapshot.product_id,
        status=snapshot.status,
        plan=plan,
        billing=billing_from_snapshot(snapshot),
        usage=UsageCounters(last_reset=now),
        version=change.version,
    )


def plan_transition(
    stored: Subscription,
    change: SubscriptionChange,
    catalog: IPlanCatalog,
    now: datetime,
) -> TransitionPlan:
    """Decide the next record for `stored` given `change`."""
    reason = stale_reason(stored, change)
    if reason is not None:
        return TransitionPlan(
            outcome=ApplyOutcome.STALE,
            subscription=stored,
            previous_status=stored.status,
            reason=reason,
        )

    snapshot = change.snapshot
    plan = stored.plan
    price_id = stored.remote_price_id
    product_id = stored.remote_product_id
    customer_id = stored.remote_customer_id

    if snapshot is not None:
        status = snapshot.status
        billing = billing_from_snapshot(snapshot)
        customer_id = snapshot.customer_id or customer_id
        if snapshot.price_id and snapshot.price_id != stored.remote_price_id:
            plan = catalog.resolve(snapshot)
            price_id = snapshot.price_id
            product_id = snapshot.product_id
    else:
        status, billing = derive_from_invoice(stored, change)

    if (
        status == stored.status
        and billing == stored.billing
        and price_id == stored.remote_price_id
        and customer_id == stored.remote_customer_id
    ):
        return TransitionPlan(
            outcome=ApplyOutcome.DUPLICATE,
            subscription=stored,
            previous_status=stored.status,
        )

    reset = (
        billing.current_period_start is not None
        and billing.current_period_start != stored.billing.current_period_start
    )
    usage = UsageCounters(last_reset=now) if reset else stored.usage

    version = stored.version
    if version is None or change.version > version:
        version = change.version

    updated = stored.model_copy(update={
        "status": status,
        "billing": billing,
        "plan": plan,
        "remote_price_id": price_id,
        "remote_product_id": product_id,
        "remote_customer_id": customer_id,
        "usage": usage,
        "version": version,
        "updated_at": now,
    })

    return TransitionPlan(
        outcome=ApplyOutcome.UPDATED,
        subscription=updated,
        previous_status=stored.status,
        reset_usage=reset,
        unexpected=not is_expected_transition(stored.status, status),
    )
