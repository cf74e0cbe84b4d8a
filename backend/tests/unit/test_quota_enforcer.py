"""
Unit tests for quota enforcement.

The concurrency tests fire many increments at once and check that exactly
min(requests, remaining) are admitted and the counter never passes the
limit.
"""

import asyncio

import pytest

from app.domain.billing_events import ProviderSubscription
from app.domain.state_machine import SubscriptionChange
from app.domain.subscription import (
    BYTES_PER_GB,
    UNLIMITED,
    PlanTier,
    ResourceKind,
)
from app.infrastructure.exceptions import ValidationError
from app.infrastructure.services.quota_enforcer import QuotaEnforcer, month_start

from fakes import at, subscription_object


async def subscribe(billing, version=None, **kwargs):
    snapshot = ProviderSubscription.from_stripe(subscription_object(**kwargs))
    result = await billing.store.apply_event(SubscriptionChange.from_snapshot(snapshot, version or at(1)))
    return result.subscription


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.mark.asyncio
class TestSubscriptionQuota:

    async def test_increment_within_limit(self, billing):
        await subscribe(billing)

        result = await billing.quota.check_and_increment("user_1", ResourceKind.IMAGE)

        assert result.allowed is True
        assert result.tier == PlanTier.PREMIUM
        assert result.used == 1
        assert result.remaining == 99
        assert result.remote_subscription_id == "sub_1"

    async def test_rejection_leaves_usage_untouched(self, billing, subscriptions):
        sub = await subscribe(billing)
        subscriptions.rows[sub.id].usage.models_generated = 50

        result = await billing.quota.check_and_increment("user_1", ResourceKind.MODEL)

        assert result.allowed is False
        assert result.limit == 50
        assert result.used == 50
        assert subscriptions.rows[sub.id].usage.models_generated == 50

    async def test_concurrent_increments_never_exceed_limit(self, billing, subscriptions):
        sub = await subscribe(billing)
        subscriptions.rows[sub.id].usage.images_generated = 95

        results = await asyncio.gather(*(
            billing.quota.check_and_increment("user_1", ResourceKind.IMAGE) for _ in range(20)
        ))

        assert sum(r.allowed for r in results) == 5
        assert subscriptions.rows[sub.id].usage.images_generated == 100

    async def test_separate_processes_share_the_bound(self, billing, subscriptions, ledgers, catalog):
        sub = await subscribe(billing)
        subscriptions.rows[sub.id].usage.images_generated = 97
        # Two enforcers with their own locks behave like two workers
        workers = [QuotaEnforcer(subscriptions, ledgers, catalog) for _ in range(2)]

        results = await asyncio.gather(*(
            worker.check_and_increment("user_1", ResourceKind.IMAGE)
            for worker in workers
            for _ in range(5)
        ))

        assert sum(r.allowed for r in results) == 3
        assert subscriptions.rows[sub.id].usage.images_generated == 100

    async def test_unlimited_plan(self, billing):
        await subscribe(billing, price_id="price_pro_monthly")

        result = await billing.quota.check_and_increment("user_1", ResourceKind.IMAGE, 1000)

        assert result.allowed is True
        assert result.limit == UNLIMITED
        assert result.remaining == UNLIMITED

    async def test_storage_counts_bytes(self, billing):
        await subscribe(billing)

        accepted = await billing.quota.check_and_increment("user_1", ResourceKind.STORAGE, 10 * BYTES_PER_GB)
        rejected = await billing.quota.check_and_increment("user_1", ResourceKind.STORAGE, 1)

        assert accepted.allowed is True
        assert accepted.remaining == 0
        assert rejected.allowed is False

    async def test_renewal_restores_quota(self, billing, subscriptions):
        sub = await subscribe(billing)
        subscriptions.rows[sub.id].usage.images_generated = 100
        assert not (await billing.quota.check_and_increment("user_1", ResourceKind.IMAGE)).allowed

        await subscribe(billing, version=at(1, 2), period_start=at(1, 2))

        result = await billing.quota.check_and_increment("user_1", ResourceKind.IMAGE)
        assert result.allowed is True
        assert result.used == 1

    async def test_past_due_falls_back_to_free_plan(self, billing):
        await subscribe(billing, status="past_due")

        result = await billing.quota.check_and_increment("user_1", ResourceKind.IMAGE)

        assert result.tier == PlanTier.FREE
        assert result.remote_subscription_id is None

    @pytest.mark.parametrize("amount", [0, -3])
    async def test_amount_must_be_positive(self, billing, amount):
        with pytest.raises(ValidationError):
            await billing.quota.check_and_increment("user_1", ResourceKind.IMAGE, amount)


@pytest.mark.asyncio
class TestFreeQuota:

    async def test_concurrent_free_increments(self, billing, ledgers):
        results = await asyncio.gather(*(
            billing.quota.check_and_increment("user_2", ResourceKind.IMAGE) for _ in range(10)
        ))

        assert sum(r.allowed for r in results) == 3
        assert ledgers.ledgers["user_2"].usage.images_generated == 3

    async def test_ledger_rolls_over_each_month(self, subscriptions, ledgers, catalog):
        clock = Clock(at(20, 1))
        quota = QuotaEnforcer(subscriptions, ledgers, catalog, clock=clock)

        for _ in range(3):
            assert (await quota.check_and_increment("user_2", ResourceKind.IMAGE)).allowed
        assert not (await quota.check_and_increment("user_2", ResourceKind.IMAGE)).allowed

        clock.now = at(1, 2)
        result = await quota.check_and_increment("user_2", ResourceKind.IMAGE)

        assert result.allowed is True
        assert result.used == 1
        assert ledgers.resets == 1
        assert ledgers.ledgers["user_2"].period_start == at(1, 2)

    async def test_month_start(self):
        assert month_start(at(17, 3).replace(hour=13, minute=5)) == at(1, 3)


@pytest.mark.asyncio
class TestLimits:

    async def test_free_user_limits(self, billing):
        limits = await billing.quota.get_limits("user_2")

        assert limits.plan == PlanTier.FREE
        assert limits.plan_name == "Basic"
        assert limits.subscription is None
        assert limits.remaining == {"image": 3, "model": 1, "storage": BYTES_PER_GB}

    async def test_subscriber_limits(self, billing, subscriptions):
        sub = await subscribe(billing)
        subscriptions.rows[sub.id].usage.images_generated = 40

        limits = await billing.quota.get_limits("user_1")

        assert limits.plan == PlanTier.PREMIUM
        assert limits.remaining["image"] == 60
        assert limits.subscription.remote_subscription_id == "sub_1"
        assert limits.subscription.current_period_end == sub.billing.current_period_end
