"""
Subscription Store

Applies provider-originated changes to the canonical subscription record.
Both the webhook path and reconciliation go through `apply_event`, so
there is one code path for what a subscription should look like.

Serialization: an in-process lock per remote subscription id, plus the
repository's revision compare-and-swap for other processes.
"""

import logging
from typing import Callable, Optional

from pydantic import BaseModel

from app.domain.interfaces import ISubscriptionRepository, IUserStore
from app.domain.plan_catalog import IPlanCatalog
from app.domain.state_machine import (
    ApplyOutcome,
    SubscriptionChange,
    build_subscription,
    plan_transition,
)
from app.domain.subscription import Subscription, SubscriptionStatus, utc_now
from app.infrastructure.concurrency import KeyedLock
from app.infrastructure.exceptions import (
    DuplicateError,
    TransientStoreError,
    UnknownSubjectError,
)


logger = logging.getLogger(__name__)


class ApplyResult(BaseModel):
    outcome: ApplyOutcome
    subscription: Subscription
    previous_status: Optional[SubscriptionStatus] = None
    reset_usage: bool = False
    reason: Optional[str] = None


class SubscriptionStore:
    """
    Owner of subscription status and billing fields.

    After a successful create or update the user's projection is refreshed;
    projection failures are retried in the background and never fail the
    canonical write.
    """

    def __init__(
        self,
        subscriptions: ISubscriptionRepository,
        users: IUserStore,
        catalog: IPlanCatalog,
        projections=None,
        locks: Optional[KeyedLock] = None,
        max_attempts: int = 3,
        clock: Callable = utc_now,
    ):
        self._subscriptions = subscriptions
        self._users = users
        self._catalog = catalog
        self._projections = projections
        self._locks = locks or KeyedLock("subscription")
        self._max_attempts = max_attempts
        self._clock = clock

    async def apply_event(self, change: SubscriptionChange) -> ApplyResult:
        """
        Apply one change idempotently.

        Raises:
            UnknownSubjectError: no local record and no resolvable owner
            TransientStoreError: concurrent writers kept winning the CAS
        """
        async with self._locks.hold(change.remote_subscription_id):
            result = await self._apply(change)

        if self._projections is not None and result.outcome in (ApplyOutcome.CREATED, ApplyOutcome.UPDATED):
            await self._projections.refresh(result.subscription.user_id)

        return result

    async def _apply(self, change: SubscriptionChange) -> ApplyResult:
        remote_id = change.remote_subscription_id

        for attempt in range(self._max_attempts):
            now = self._clock()
            stored = await self._subscriptions.get_by_remote_id(remote_id)

            if stored is None:
                if change.snapshot is None:
                    raise UnknownSubjectError(
                        f"No local subscription {remote_id} and no provider state to create it from",
                        remote_subscription_id=remote_id,
                    )

                user_id = await self._resolve_owner(change)
                candidate = build_subscription(user_id, change, self._catalog, now)
                try:
                    created = await self._subscriptions.create(candidate)
                except DuplicateError:
                    logger.info(f"Subscription {remote_id} created concurrently, applying as update")
                    continue

                logger.info(
                    f"Subscription {remote_id} created for user {user_id}: "
                    f"{created.status.value} on {created.plan.tier.value} ({change.source})"
                )
                return ApplyResult(outcome=ApplyOutcome.CREATED, subscription=created)

            plan = plan_transition(stored, change, self._catalog, now)

            if plan.outcome == ApplyOutcome.STALE:
                logger.info(f"Ignoring stale change for {remote_id}: {plan.reason} ({change.source})")
                return ApplyResult(
                    outcome=plan.outcome,
                    subscription=stored,
                    previous_status=stored.status,
                    reason=plan.reason,
                )

            if plan.outcome == ApplyOutcome.DUPLICATE:
                logger.info(f"No-op change for {remote_id}: state already {stored.status.value}")
                return ApplyResult(
                    outcome=plan.outcome,
                    subscription=stored,
                    previous_status=stored.status,
                )

            if plan.unexpected:
                logger.warning(
                    f"Unexpected transition for {remote_id}: "
                    f"{stored.status.value} -> {plan.subscription.status.value}; applying provider state"
                )

            if await self._subscriptions.save_transition(plan.subscription, stored.revision, plan.reset_usage):
                saved = plan.subscription.model_copy(update={"revision": stored.revision + 1})
                logger.info(
                    f"Subscription {remote_id}: {stored.status.value} -> {saved.status.value}"
                    f"{' (usage reset)' if plan.reset_usage else ''} ({change.source})"
                )
                return ApplyResult(
                    outcome=ApplyOutcome.UPDATED,
                    subscription=saved,
                    previous_status=stored.status,
                    reset_usage=plan.reset_usage,
                )

            logger.info(f"Subscription {remote_id} changed concurrently, retrying ({attempt + 1})")

        raise TransientStoreError(
            f"Could not apply change to {remote_id} after {self._max_attempts} attempts",
            operation="apply_event",
            table="subscriptions",
        )

    async def _resolve_owner(self, change: SubscriptionChange) -> str:
        """Explicit owner, then subscription metadata, then the customer link."""
        snapshot = change.snapshot
        for candidate in (change.user_id, snapshot.user_id):
            if candidate and await self._users.get(candidate) is not None:
                return candidate

        if snapshot.customer_id:
            user = await self._users.get_by_customer_id(snapshot.customer_id)
            if user is not None:
                return user.id

        raise UnknownSubjectError(
            f"Cannot resolve the user for subscription {snapshot.id}",
            remote_subscription_id=snapshot.id,
            remote_customer_id=snapshot.customer_id,
        )
