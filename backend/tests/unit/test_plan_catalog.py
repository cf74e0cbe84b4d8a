"""
Unit tests for plan resolution from provider subscriptions.
"""

from app.domain.billing_events import ProviderSubscription
from app.domain.plan_catalog import StaticPlanCatalog, parse_tier
from app.domain.subscription import (
    BYTES_PER_GB,
    UNLIMITED,
    PlanLimits,
    PlanTier,
    ResourceKind,
    SubscriptionStatus,
)


def snap(**kwargs) -> ProviderSubscription:
    return ProviderSubscription(id="sub_1", status=SubscriptionStatus.ACTIVE, **kwargs)


class TestTierResolution:

    def test_subscription_metadata_wins(self, catalog):
        snapshot = snap(price_id="price_premium_monthly", metadata={"planType": "enterprise"})
        assert catalog.resolve_tier(snapshot) == PlanTier.ENTERPRISE

    def test_configured_price_id(self, catalog):
        assert catalog.resolve_tier(snap(price_id="price_pro_monthly")) == PlanTier.PRO

    def test_price_metadata(self, catalog):
        assert catalog.resolve_tier(snap(price_id="price_x", price_metadata={"tier": "pro"})) == PlanTier.PRO

    def test_product_metadata(self, catalog):
        snapshot = snap(price_id="price_x", product_metadata={"plan_type": "Enterprise"})
        assert catalog.resolve_tier(snapshot) == PlanTier.ENTERPRISE

    def test_price_nickname(self, catalog):
        assert catalog.resolve_tier(snap(price_nickname="Studio (monthly)")) == PlanTier.PRO
        assert catalog.resolve_tier(snap(price_nickname="Creator yearly")) == PlanTier.PREMIUM

    def test_unknown_price_defaults_to_premium(self, catalog):
        snapshot = snap(price_id="price_unknown")
        assert catalog.resolve_tier(snapshot) is None
        assert catalog.resolve(snapshot).tier == PlanTier.PREMIUM

    def test_display_names_parse(self):
        assert parse_tier("Creator") == PlanTier.PREMIUM
        assert parse_tier(" studio ") == PlanTier.PRO
        assert parse_tier("gold") is None
        assert parse_tier(None) is None

    def test_unparseable_price_mapping_dropped(self):
        catalog = StaticPlanCatalog(price_tiers={"price_gold": "gold"})
        assert catalog.resolve_tier(snap(price_id="price_gold")) is None


class TestPlans:

    def test_plan_priced_from_snapshot(self, catalog):
        snapshot = snap(price_amount=2900, currency="usd", interval="month")
        plan = catalog.plan_for_tier(PlanTier.PRO, snapshot)

        assert plan.name == "Studio"
        assert plan.price.amount == 2900
        assert plan.limits.images_per_month == UNLIMITED
        assert plan.limits.limit_for(ResourceKind.STORAGE) == 100 * BYTES_PER_GB

    def test_free_plan_uses_configured_limits(self):
        catalog = StaticPlanCatalog(free_limits=PlanLimits(images_per_month=5, models_per_month=2, storage_gb=2))
        plan = catalog.free_plan()

        assert plan.tier == PlanTier.FREE
        assert plan.limits.limit_for(ResourceKind.IMAGE) == 5
        assert plan.limits.limit_for(ResourceKind.STORAGE) == 2 * BYTES_PER_GB

    def test_plans_do_not_share_limits(self, catalog):
        first = catalog.plan_for_tier(PlanTier.PREMIUM)
        first.limits.images_per_month = 1
        assert catalog.plan_for_tier(PlanTier.PREMIUM).limits.images_per_month == 100
