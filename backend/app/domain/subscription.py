"""
Subscription Domain Models

Domain models for the billing bounded context following Clean Architecture.
Enums, domain entities, and request/response DTOs for subscriptions,
usage counters and the user-facing plan projection.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


BYTES_PER_GB = 1024 ** 3
UNLIMITED = -1


def utc_now() -> datetime:
    """Timezone-aware current time (UTC)."""
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status (mirrors the provider's vocabulary)."""
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


class PlanTier(str, Enum):
    """Plan tiers, ordered from least to most access."""
    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class ResourceKind(str, Enum):
    """Metered resources counted against monthly quotas."""
    IMAGE = "image"
    MODEL = "model"
    STORAGE = "storage"


ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})
TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED})


class DomainModel(BaseModel):
    """Base for domain models: snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# Value Objects
# =============================================================================

class PlanPrice(DomainModel):
    """Recurring price attached to a plan."""
    amount: Optional[int] = None  # In minor units (cents)
    currency: Optional[str] = None
    interval: Optional[str] = None
    interval_count: int = 1


class PlanLimits(DomainModel):
    """Monthly limits for a plan. -1 means unlimited."""
    images_per_month: int
    models_per_month: int
    storage_gb: int
    priority_support: bool = False
    custom_branding: bool = False
    api_access: bool = False
    team_members: int = 1

    def limit_for(self, kind: ResourceKind) -> int:
        """Limit expressed in the unit the counter uses (storage in bytes)."""
        if kind == ResourceKind.IMAGE:
            return self.images_per_month
        if kind == ResourceKind.MODEL:
            return self.models_per_month
        if self.storage_gb == UNLIMITED:
            return UNLIMITED
        return self.storage_gb * BYTES_PER_GB


class Plan(DomainModel):
    """Resolved plan: name, tier, price, features and limits."""
    name: str
    tier: PlanTier
    price: PlanPrice = Field(default_factory=PlanPrice)
    features: list[str] = Field(default_factory=list)
    limits: PlanLimits


class BillingInfo(DomainModel):
    """Billing period and cancellation state as last reported by the provider."""
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


class UsageCounters(DomainModel):
    """Usage accumulated in the current period."""
    images_generated: int = 0
    models_generated: int = 0
    storage_used: int = 0  # Bytes
    last_reset: Optional[datetime] = None

    def used(self, kind: ResourceKind) -> int:
        if kind == ResourceKind.IMAGE:
            return self.images_generated
        if kind == ResourceKind.MODEL:
            return self.models_generated
        return self.storage_used


# =============================================================================
# Domain Entities
# =============================================================================

class Subscription(DomainModel):
    """
    Core subscription entity: the canonical record for entitlement.

    `version` is the provider-side timestamp of the last applied state and
    drives ordering. `revision` is a local counter used for compare-and-swap
    writes of status and billing fields.
    """
    id: Optional[str] = None
    user_id: str
    remote_subscription_id: str
    remote_customer_id: Optional[str] = None
    remote_price_id: Optional[str] = None
    remote_product_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    plan: Plan
    billing: BillingInfo = Field(default_factory=BillingInfo)
    usage: UsageCounters = Field(default_factory=UsageCounters)
    version: Optional[datetime] = None
    revision: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class FreeUsageLedger(DomainModel):
    """Calendar-month usage counters for a user without an entitled subscription."""
    user_id: str
    period_start: datetime
    usage: UsageCounters = Field(default_factory=UsageCounters)


class UserProjection(DomainModel):
    """Denormalized "current plan" summary stored on the user row."""
    user_id: str
    tier: PlanTier = PlanTier.FREE
    status: Optional[SubscriptionStatus] = None
    expires_at: Optional[datetime] = None
    features: list[str] = Field(default_factory=list)
    remote_subscription_id: Optional[str] = None
    version: Optional[datetime] = None


class QuotaCheckResult(DomainModel):
    """Outcome of a quota check; rejections are data, not exceptions."""
    allowed: bool
    kind: ResourceKind
    requested: int
    used: int
    limit: int
    remaining: int
    tier: PlanTier
    usage: UsageCounters
    remote_subscription_id: Optional[str] = None


# =============================================================================
# Request/Response DTOs
# =============================================================================

class TrackUsageRequest(DomainModel):
    """Request DTO for recording resource consumption."""
    type: ResourceKind = Field(..., description="Resource being consumed")
    amount: int = Field(default=1, ge=1, description="Units to add (bytes for storage)")


class PlanSummary(DomainModel):
    """Subscription summary embedded in usage responses."""
    name: str
    tier: PlanTier
    status: SubscriptionStatus
    remote_subscription_id: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


class UsageLimitsResponse(DomainModel):
    """Response DTO for the usage limits endpoint."""
    plan: PlanTier
    plan_name: str
    limits: PlanLimits
    usage: UsageCounters
    remaining: dict[str, int]
    subscription: Optional[PlanSummary] = None


class TrackUsageResponse(DomainModel):
    """Response DTO for an accepted usage increment."""
    allowed: bool = True
    usage: UsageCounters
    remaining: int
    subscription: Optional[PlanSummary] = None


class QuotaExceededResponse(DomainModel):
    """Response DTO (HTTP 402) for a rejected usage increment."""
    error: str = "quota_exceeded"
    message: str
    type: ResourceKind
    limit: int
    used: int
    requested: int
    plan: PlanTier
    upgrade_required: bool = True


class SyncSubscriptionsRequest(DomainModel):
    """Request DTO for an operator-triggered reconciliation."""
    user_id: str
    session_handle: Optional[str] = Field(
        default=None,
        description="Checkout session (cs_...) or subscription (sub_...) id",
    )
    cancel_if_missing: bool = False


class HealRequest(DomainModel):
    """Request DTO for the batch heal job."""
    limit: int = Field(default=50, ge=1, le=500)


class ReplayEventRequest(DomainModel):
    """Request DTO for replaying a stored webhook event."""
    user_id: Optional[str] = Field(
        default=None,
        description="Owner to attach when the event's user could not be resolved",
    )


class CreateCheckoutRequest(DomainModel):
    """Request DTO for creating a checkout session."""
    tier: PlanTier = Field(default=PlanTier.PREMIUM, description="Plan tier to purchase")
    interval: str = Field(default="month", pattern="^(month|year)$")
    success_url: str = Field(..., description="Redirect URL after successful payment")
    cancel_url: str = Field(..., description="Redirect URL after cancelled payment")


class CheckoutResponse(DomainModel):
    """Response DTO for checkout session creation."""
    checkout_url: str
    session_id: str


class CancelSubscriptionResponse(DomainModel):
    """Response DTO for a user-initiated cancellation."""
    remote_subscription_id: str
    status: SubscriptionStatus
    cancel_at_period_end: bool
    current_period_end: Optional[datetime] = None
    outcome: str


def summarize(subscription: Optional[Subscription]) -> Optional[PlanSummary]:
    """Build the embedded summary for an optional subscription."""
    if subscription is None:
        return None
    return PlanSummary(
        name=subscription.plan.name,
        tier=subscription.plan.tier,
        status=subscription.status,
        remote_subscription_id=subscription.remote_subscription_id,
        current_period_end=subscription.billing.current_period_end,
        cancel_at_period_end=subscription.billing.cancel_at_period_end,
    )


def select_canonical(subscriptions: list[Subscription]) -> Optional[Subscription]:
    """
    Pick the subscription that decides a user's entitlement.

    Entitled (active/trialing) records only; latest period end wins, ties
    go to the most recently created record.
    """
    floor = datetime.min.replace(tzinfo=timezone.utc)
    entitled = [sub for sub in subscriptions if sub.is_entitled]
    if not entitled:
        return None
    return max(
        entitled,
        key=lambda sub: (
            sub.billing.current_period_end or floor,
            sub.created_at or floor,
        ),
    )
