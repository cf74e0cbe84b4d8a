"""
Subscription Reconciler

Pulls authoritative subscription state from the provider and feeds it
through the Subscription Store, the same path webhooks use. Used by the
operator sync endpoint, the heal job and the reconcile script.

Pulled state is applied as authoritative (it bypasses the stale-event
rule) and versioned at pull time.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import Field

from app.domain.billing_events import (
    EventDecodeError,
    ProviderCheckoutSession,
    ProviderSubscription,
)
from app.domain.interfaces import IProviderClient, ISubscriptionRepository, IUserStore
from app.domain.plan_catalog import tier_from_metadata
from app.domain.state_machine import ApplyOutcome, SubscriptionChange
from app.domain.subscription import (
    ENTITLED_STATUSES,
    DomainModel,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    UserProjection,
    utc_now,
)
from app.domain.user import UserAccount
from app.infrastructure.exceptions import (
    BillingSyncError,
    NotFoundError,
    ReconciliationMismatch,
    ValidationError,
)
from app.infrastructure.services.projection_updater import ProjectionUpdater
from app.infrastructure.services.subscription_store import SubscriptionStore


logger = logging.getLogger(__name__)

MISSING_AT_PROVIDER = "missing_at_provider"


class ReconciledSubscription(DomainModel):
    remote_subscription_id: str
    status: SubscriptionStatus
    tier: PlanTier
    outcome: ApplyOutcome


class ReconciliationReport(DomainModel):
    """What one reconciliation run found and changed."""
    user_id: str
    found: bool
    message: str
    subscriptions: list[ReconciledSubscription] = Field(default_factory=list)
    mismatches: list[dict[str, Any]] = Field(default_factory=list)
    projection: Optional[UserProjection] = None


class HealReport(DomainModel):
    checked: int = 0
    fixed: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = Field(default_factory=list)


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, SubscriptionStatus):
        return value.value
    return value


class SubscriptionReconciler:
    """
    Brings local subscription state back in line with the provider.

    Sources, in order of preference:
    1. a checkout session handle (cs_...): its subscription
    2. a subscription handle (sub_...): that subscription
    3. otherwise the user's customer subscriptions (linked or found by
       metadata search)
    """

    def __init__(
        self,
        store: SubscriptionStore,
        provider: IProviderClient,
        subscriptions: ISubscriptionRepository,
        users: IUserStore,
        projections: ProjectionUpdater,
        clock: Callable = utc_now,
    ):
        self._store = store
        self._provider = provider
        self._subscriptions = subscriptions
        self._users = users
        self._projections = projections
        self._clock = clock

    async def reconcile(
        self,
        user_id: str,
        handle: Optional[str] = None,
        cancel_if_missing: bool = False,
    ) -> ReconciliationReport:
        """
        Reconcile one user's subscriptions with the provider.

        Args:
            user_id: Internal user id
            handle: Optional checkout session or subscription id
            cancel_if_missing: Cancel local non-terminal records when the
                provider has no subscription for the user

        Raises:
            NotFoundError: unknown user or handle
            ValidationError: handle is not a subscription checkout or
                belongs to another user
            ProviderError: provider unreachable
        """
        user = await self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", operation="reconcile", table="users")

        pulled = await self._collect(user, handle)
        report = ReconciliationReport(user_id=user_id, found=bool(pulled), message="")

        if not pulled:
            if cancel_if_missing:
                report.subscriptions = await self._cancel_local(user_id)
                report.message = f"No subscriptions at provider; canceled {len(report.subscriptions)} local"
            else:
                report.message = "No subscriptions found"
            logger.info(f"Reconcile {user_id}: {report.message}")
        else:
            for snapshot, tier_hint in pulled:
                conflict = await self._ownership_conflict(user_id, snapshot)
                if conflict:
                    logger.warning(f"Reconcile {user_id}: skipping {snapshot.id}, {conflict}")
                    continue

                stored = await self._subscriptions.get_by_remote_id(snapshot.id)
                mismatch = self.diff(stored, snapshot)
                if mismatch is not None:
                    logger.warning(f"Reconcile {user_id}: {mismatch.message}")
                    report.mismatches.append(mismatch.to_dict())

                change = SubscriptionChange.from_snapshot(
                    snapshot,
                    self._clock(),
                    source="reconcile",
                    authoritative=True,
                    user_id=user_id,
                    tier_hint=tier_hint,
                )
                result = await self._store.apply_event(change)
                report.subscriptions.append(self._summary(result.subscription, result.outcome))

            report.message = f"Reconciled {len(report.subscriptions)} subscription(s)"
            logger.info(f"Reconcile {user_id}: {report.message}, {len(report.mismatches)} mismatch(es)")

        await self._projections.refresh(user_id)
        refreshed = await self._users.get(user_id)
        report.projection = refreshed.projection if refreshed is not None else None
        return report

    async def heal_missing(self, limit: int = 50) -> HealReport:
        """
        Reconcile users who completed a checkout but have no entitled
        subscription locally (lost or dead-lettered webhooks).
        """
        report = HealReport()
        candidates = await self._users.list_heal_candidates(limit)
        logger.info(f"Heal job: {len(candidates)} candidate user(s)")

        for user in candidates:
            report.checked += 1
            try:
                result = await self.reconcile(user.id, user.last_checkout_session_id)
            except BillingSyncError as e:
                report.failed += 1
                report.errors.append({"userId": user.id, "error": e.message})
                logger.error(f"Heal job: user {user.id} failed: {e.message}")
                continue

            if any(sub.status in ENTITLED_STATUSES for sub in result.subscriptions):
                report.fixed += 1

        logger.info(f"Heal job: checked={report.checked} fixed={report.fixed} failed={report.failed}")
        return report

    def diff(
        self,
        stored: Optional[Subscription],
        snapshot: ProviderSubscription,
    ) -> Optional[ReconciliationMismatch]:
        """Differences between the local record and provider state, if any."""
        if stored is None:
            return ReconciliationMismatch(snapshot.id, {"record": {"local": None, "provider": "present"}})

        pairs = {
            "status": (stored.status, snapshot.status),
            "priceId": (stored.remote_price_id, snapshot.price_id),
            "currentPeriodStart": (stored.billing.current_period_start, snapshot.current_period_start),
            "currentPeriodEnd": (stored.billing.current_period_end, snapshot.current_period_end),
            "cancelAtPeriodEnd": (stored.billing.cancel_at_period_end, snapshot.cancel_at_period_end),
        }
        differences = {
            field: {"local": _plain(local), "provider": _plain(remote)}
            for field, (local, remote) in pairs.items()
            if local != remote
        }
        if not differences:
            return None
        return ReconciliationMismatch(snapshot.id, differences)

    # =========================================================================
    # Provider Collection
    # =========================================================================

    async def _collect(
        self,
        user: UserAccount,
        handle: Optional[str],
    ) -> list[tuple[ProviderSubscription, Optional[PlanTier]]]:
        if handle and handle.startswith("cs_"):
            return await self._from_checkout_session(user, handle)

        if handle and handle.startswith("sub_"):
            raw = await self._provider.retrieve_subscription(handle)
            if raw is None:
                raise NotFoundError(f"Subscription {handle} not found at provider", operation="reconcile")
            return [(self._decode(raw), None)]

        if handle:
            raise ValidationError(
                f"Unrecognized session handle: {handle}",
                details={"sessionHandle": handle},
            )

        customer_id = user.stripe_customer_id
        if not customer_id:
            customer_id = await self._provider.find_customer_id(user.id)
            if not customer_id:
                return []
            await self._users.link_customer(user.id, customer_id)

        raws = await self._provider.list_customer_subscriptions(customer_id, limit=10)
        return [(self._decode(raw), None) for raw in raws]

    async def _from_checkout_session(
        self,
        user: UserAccount,
        session_id: str,
    ) -> list[tuple[ProviderSubscription, Optional[PlanTier]]]:
        raw = await self._provider.retrieve_checkout_session(session_id)
        if raw is None:
            raise NotFoundError(f"Checkout session {session_id} not found", operation="reconcile")

        try:
            session = ProviderCheckoutSession.from_stripe(raw)
        except EventDecodeError as e:
            raise ValidationError(f"Checkout session {session_id} is malformed: {e}") from e

        if not session.is_subscription:
            raise ValidationError(f"Checkout session {session_id} is not a subscription checkout")
        if session.user_id and session.user_id != user.id:
            raise ValidationError(f"Checkout session {session_id} belongs to another user")

        if session.customer_id:
            await self._users.link_customer(user.id, session.customer_id)
        await self._users.remember_checkout_session(user.id, session.id)

        snapshot = session.subscription
        if snapshot is None and session.remote_subscription_id:
            raw_subscription = await self._provider.retrieve_subscription(session.remote_subscription_id)
            snapshot = self._decode(raw_subscription) if raw_subscription is not None else None

        if snapshot is None:
            return []
        return [(snapshot, tier_from_metadata(session.metadata))]

    async def _ownership_conflict(self, user_id: str, snapshot: ProviderSubscription) -> Optional[str]:
        """Why the snapshot cannot be attached to this user, if it cannot."""
        if snapshot.user_id and snapshot.user_id != user_id:
            return f"provider metadata names user {snapshot.user_id}"
        if not snapshot.customer_id:
            return None

        owner = await self._users.get_by_customer_id(snapshot.customer_id)
        if owner is not None and owner.id != user_id:
            return f"customer {snapshot.customer_id} is linked to user {owner.id}"

        user = await self._users.get(user_id)
        if user is not None and user.stripe_customer_id and user.stripe_customer_id != snapshot.customer_id:
            return f"customer {snapshot.customer_id} differs from linked customer {user.stripe_customer_id}"
        return None

    def _decode(self, raw: dict) -> ProviderSubscription:
        try:
            return ProviderSubscription.from_stripe(raw)
        except EventDecodeError as e:
            raise ValidationError(f"Provider returned a malformed subscription: {e}") from e

    # =========================================================================
    # Local Cancellation
    # =========================================================================

    async def _cancel_local(self, user_id: str) -> list[ReconciledSubscription]:
        """Cancel local records the provider no longer knows about."""
        canceled = []
        now = self._clock()

        for stored in await self._subscriptions.list_by_user(user_id):
            if stored.is_terminal:
                continue

            snapshot = ProviderSubscription(
                id=stored.remote_subscription_id,
                customer_id=stored.remote_customer_id,
                status=SubscriptionStatus.CANCELED,
                price_id=stored.remote_price_id,
                product_id=stored.remote_product_id,
                current_period_start=stored.billing.current_period_start,
                current_period_end=stored.billing.current_period_end,
                trial_start=stored.billing.trial_start,
                trial_end=stored.billing.trial_end,
                canceled_at=now,
                cancellation_reason=MISSING_AT_PROVIDER,
            )
            change = SubscriptionChange.from_snapshot(
                snapshot,
                now,
                source="reconcile",
                authoritative=True,
                user_id=user_id,
            )
            result = await self._store.apply_event(change)
            canceled.append(self._summary(result.subscription, result.outcome))

        return canceled

    def _summary(self, subscription: Subscription, outcome: ApplyOutcome) -> ReconciledSubscription:
        return ReconciledSubscription(
            remote_subscription_id=subscription.remote_subscription_id,
            status=subscription.status,
            tier=subscription.plan.tier,
            outcome=outcome,
        )
