"""
Plan Catalog

Maps provider price/product identifiers to plan definitions (name, tier,
features, limits). Tier resolution walks an ordered list of hints and
stops at the first that names a known tier.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from app.domain.billing_events import ProviderSubscription, first_match
from app.domain.subscription import (
    Plan,
    PlanLimits,
    PlanPrice,
    PlanTier,
    UNLIMITED,
)


# =============================================================================
# Tier Configuration (Business Logic)
# =============================================================================

PLAN_NAMES = {
    PlanTier.FREE: "Basic",
    PlanTier.PREMIUM: "Creator",
    PlanTier.PRO: "Studio",
    PlanTier.ENTERPRISE: "Enterprise",
}

PLAN_FEATURES = {
    PlanTier.FREE: [
        "Basic AI generation",
        "3 designs per month",
        "Community support",
    ],
    PlanTier.PREMIUM: [
        "Advanced AI generation",
        "Unlimited designs",
        "Priority support",
        "High-res exports",
    ],
    PlanTier.PRO: [
        "All Premium features",
        "API access",
        "Custom branding",
        "Team collaboration",
    ],
    PlanTier.ENTERPRISE: [
        "All Pro features",
        "Dedicated support",
        "Custom integrations",
        "SLA guarantee",
    ],
}

PLAN_LIMITS = {
    PlanTier.PREMIUM: PlanLimits(
        images_per_month=100,
        models_per_month=50,
        storage_gb=10,
        priority_support=True,
    ),
    # Studio generation is unmetered; storage stays capped
    PlanTier.PRO: PlanLimits(
        images_per_month=UNLIMITED,
        models_per_month=UNLIMITED,
        storage_gb=100,
        priority_support=True,
        custom_branding=True,
        api_access=True,
        team_members=5,
    ),
    PlanTier.ENTERPRISE: PlanLimits(
        images_per_month=UNLIMITED,
        models_per_month=UNLIMITED,
        storage_gb=1000,
        priority_support=True,
        custom_branding=True,
        api_access=True,
        team_members=UNLIMITED,
    ),
}

# Price nickname fragments, checked in order
_NICKNAME_TIERS = (
    ("enterprise", PlanTier.ENTERPRISE),
    ("studio", PlanTier.PRO),
    ("pro", PlanTier.PRO),
    ("creator", PlanTier.PREMIUM),
    ("premium", PlanTier.PREMIUM),
)

_METADATA_KEYS = ("planType", "plan_type", "tier", "plan", "type")


def parse_tier(value: Optional[str]) -> Optional[PlanTier]:
    """Interpret a tier hint. Display names ("Studio", "Creator") are accepted."""
    if not value:
        return None
    normalized = value.strip().lower()
    for tier, name in PLAN_NAMES.items():
        if normalized in (tier.value, name.lower()):
            return tier
    return None


def tier_from_metadata(metadata: Optional[dict]) -> Optional[PlanTier]:
    if not metadata:
        return None
    for key in _METADATA_KEYS:
        tier = parse_tier(metadata.get(key))
        if tier is not None:
            return tier
    return None


def _tier_from_nickname(nickname: Optional[str]) -> Optional[PlanTier]:
    if not nickname:
        return None
    lowered = nickname.lower()
    for fragment, tier in _NICKNAME_TIERS:
        if fragment in lowered:
            return tier
    return None


# =============================================================================
# Interface
# =============================================================================

class IPlanCatalog(ABC):
    """Maps provider subscriptions to plan definitions."""

    @abstractmethod
    def free_plan(self) -> Plan:
        """Plan applied when a user has no entitled subscription."""
        pass

    @abstractmethod
    def plan_for_tier(self, tier: PlanTier, snapshot: Optional[ProviderSubscription] = None) -> Plan:
        """Plan definition for a tier, priced from the snapshot when given."""
        pass

    @abstractmethod
    def resolve_tier(self, snapshot: ProviderSubscription) -> Optional[PlanTier]:
        """Tier named by the snapshot's hints, or None when nothing matches."""
        pass

    def resolve(self, snapshot: ProviderSubscription) -> Plan:
        """Resolve the plan for a snapshot, defaulting unknown prices to premium."""
        tier = self.resolve_tier(snapshot) or PlanTier.PREMIUM
        return self.plan_for_tier(tier, snapshot)


class StaticPlanCatalog(IPlanCatalog):
    """
    Catalog backed by the tier tables above plus a price-id map from settings.

    Tier hints, first match wins:
    1. subscription metadata (set at checkout)
    2. configured price id
    3. price metadata
    4. product metadata (when expanded or enriched)
    5. price nickname
    """

    def __init__(
        self,
        price_tiers: Optional[dict[str, str]] = None,
        free_limits: Optional[PlanLimits] = None,
    ):
        self._price_tiers = {
            price_id: tier
            for price_id, tier in (price_tiers or {}).items()
            if parse_tier(tier) is not None
        }
        self._free_limits = free_limits or PlanLimits(
            images_per_month=3,
            models_per_month=1,
            storage_gb=1,
        )
        self._hints: tuple[Callable[[ProviderSubscription], Optional[PlanTier]], ...] = (
            lambda snap: tier_from_metadata(snap.metadata),
            lambda snap: parse_tier(self._price_tiers.get(snap.price_id)) if snap.price_id else None,
            lambda snap: tier_from_metadata(snap.price_metadata),
            lambda snap: tier_from_metadata(snap.product_metadata),
            lambda snap: _tier_from_nickname(snap.price_nickname),
        )

    def free_plan(self) -> Plan:
        return Plan(
            name=PLAN_NAMES[PlanTier.FREE],
            tier=PlanTier.FREE,
            price=PlanPrice(amount=0),
            features=list(PLAN_FEATURES[PlanTier.FREE]),
            limits=self._free_limits.model_copy(),
        )

    def plan_for_tier(self, tier: PlanTier, snapshot: Optional[ProviderSubscription] = None) -> Plan:
        if tier == PlanTier.FREE:
            return self.free_plan()

        price = PlanPrice()
        if snapshot is not None:
            price = PlanPrice(
                amount=snapshot.price_amount,
                currency=snapshot.currency,
                interval=snapshot.interval,
                interval_count=snapshot.interval_count,
            )

        return Plan(
            name=PLAN_NAMES[tier],
            tier=tier,
            price=price,
            features=list(PLAN_FEATURES[tier]),
            limits=PLAN_LIMITS[tier].model_copy(),
        )

    def resolve_tier(self, snapshot: ProviderSubscription) -> Optional[PlanTier]:
        return first_match(snapshot, self._hints)
