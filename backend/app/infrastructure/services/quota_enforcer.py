"""
Quota Enforcer

Atomic check-and-increment of monthly resource usage.

Users with an entitled subscription are charged against the counters on
that subscription; everyone else against a calendar-month free ledger.
Within a process the subject's lock serializes requests; across processes
the repositories' conditional UPDATE (`used + amount <= limit`, same
period) guarantees the counter never passes the limit.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from app.domain.interfaces import ISubscriptionRepository, IUsageLedgerRepository
from app.domain.plan_catalog import IPlanCatalog
from app.domain.subscription import (
    UNLIMITED,
    PlanTier,
    ResourceKind,
    Subscription,
    UsageCounters,
    UsageLimitsResponse,
    QuotaCheckResult,
    summarize,
    utc_now,
)
from app.infrastructure.concurrency import KeyedLock
from app.infrastructure.exceptions import TransientStoreError, ValidationError


logger = logging.getLogger(__name__)


def month_start(moment: datetime) -> datetime:
    """First instant of the calendar month containing `moment`."""
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def remaining_for(limit: int, used: int) -> int:
    if limit == UNLIMITED:
        return UNLIMITED
    return max(limit - used, 0)


class QuotaEnforcer:
    """Serializes usage increments per subject and enforces plan limits."""

    def __init__(
        self,
        subscriptions: ISubscriptionRepository,
        ledgers: IUsageLedgerRepository,
        catalog: IPlanCatalog,
        locks: Optional[KeyedLock] = None,
        max_attempts: int = 3,
        clock: Callable = utc_now,
    ):
        self._subscriptions = subscriptions
        self._ledgers = ledgers
        self._catalog = catalog
        self._locks = locks or KeyedLock("quota")
        self._max_attempts = max_attempts
        self._clock = clock

    async def check_and_increment(
        self,
        subject_id: str,
        kind: ResourceKind,
        amount: int = 1,
    ) -> QuotaCheckResult:
        """
        Record `amount` units of `kind` if the subject's limit allows it.

        A rejection is returned as a result with allowed=False and leaves
        usage untouched.

        Raises:
            ValidationError: amount below 1
            TransientStoreError: the conditional write kept losing to
                concurrent period or status changes
        """
        if amount < 1:
            raise ValidationError(
                "Usage amount must be at least 1",
                details={"amount": amount},
            )

        async with self._locks.hold(subject_id):
            for attempt in range(self._max_attempts):
                subscription = await self._subscriptions.get_entitled_for_user(subject_id)
                if subscription is not None:
                    result = await self._charge_subscription(subscription, kind, amount)
                else:
                    result = await self._charge_free(subject_id, kind, amount)

                if result is not None:
                    return result

                logger.info(f"Usage for {subject_id} changed during increment, retrying ({attempt + 1})")

        raise TransientStoreError(
            f"Could not record {kind.value} usage for {subject_id}",
            operation="increment_usage",
        )

    async def _charge_subscription(
        self,
        subscription: Subscription,
        kind: ResourceKind,
        amount: int,
    ) -> Optional[QuotaCheckResult]:
        limit = subscription.plan.limits.limit_for(kind)
        used = subscription.usage.used(kind)

        if limit != UNLIMITED and used + amount > limit:
            return self._rejected(kind, amount, used, limit, subscription.plan.tier, subscription.usage,
                                  subscription.remote_subscription_id)

        updated = await self._subscriptions.increment_usage(
            subscription.id,
            kind,
            amount,
            limit,
            subscription.billing.current_period_start,
        )
        if updated is None:
            return None

        used_now = updated.usage.used(kind)
        return QuotaCheckResult(
            allowed=True,
            kind=kind,
            requested=amount,
            used=used_now,
            limit=limit,
            remaining=remaining_for(limit, used_now),
            tier=updated.plan.tier,
            usage=updated.usage,
            remote_subscription_id=updated.remote_subscription_id,
        )

    async def _charge_free(
        self,
        user_id: str,
        kind: ResourceKind,
        amount: int,
    ) -> Optional[QuotaCheckResult]:
        ledger = await self._ledgers.get_or_open(user_id, month_start(self._clock()))
        limit = self._catalog.free_plan().limits.limit_for(kind)
        used = ledger.usage.used(kind)

        if limit != UNLIMITED and used + amount > limit:
            return self._rejected(kind, amount, used, limit, PlanTier.FREE, ledger.usage)

        updated = await self._ledgers.increment(user_id, kind, amount, limit, ledger.period_start)
        if updated is None:
            return None

        used_now = updated.usage.used(kind)
        return QuotaCheckResult(
            allowed=True,
            kind=kind,
            requested=amount,
            used=used_now,
            limit=limit,
            remaining=remaining_for(limit, used_now),
            tier=PlanTier.FREE,
            usage=updated.usage,
        )

    def _rejected(
        self,
        kind: ResourceKind,
        amount: int,
        used: int,
        limit: int,
        tier: PlanTier,
        usage: UsageCounters,
        remote_subscription_id: Optional[str] = None,
    ) -> QuotaCheckResult:
        logger.info(f"Quota exceeded on {tier.value}: {kind.value} {used}+{amount} > {limit}")
        return QuotaCheckResult(
            allowed=False,
            kind=kind,
            requested=amount,
            used=used,
            limit=limit,
            remaining=remaining_for(limit, used),
            tier=tier,
            usage=usage,
            remote_subscription_id=remote_subscription_id,
        )

    async def get_limits(self, user_id: str) -> UsageLimitsResponse:
        """Current plan, limits, usage and remaining units per resource."""
        subscription = await self._subscriptions.get_entitled_for_user(user_id)

        if subscription is not None:
            plan = subscription.plan
            usage = subscription.usage
        else:
            plan = self._catalog.free_plan()
            ledger = await self._ledgers.get_or_open(user_id, month_start(self._clock()))
            usage = ledger.usage

        remaining = {
            kind.value: remaining_for(plan.limits.limit_for(kind), usage.used(kind))
            for kind in ResourceKind
        }

        return UsageLimitsResponse(
            plan=plan.tier,
            plan_name=plan.name,
            limits=plan.limits,
            usage=usage,
            remaining=remaining,
            subscription=summarize(subscription),
        )
