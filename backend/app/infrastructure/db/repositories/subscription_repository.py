"""
Subscription Repository

Data access layer for the canonical subscription record.
Follows Repository pattern for Clean Architecture.

Concurrency contract:
- status/billing writes are compare-and-swap on `revision`
- usage increments are single conditional UPDATEs bounded by the limit and
  the billing period the caller observed
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from app.domain.interfaces import ISubscriptionRepository
from app.domain.subscription import (
    ENTITLED_STATUSES,
    UNLIMITED,
    BillingInfo,
    Plan,
    PlanLimits,
    PlanPrice,
    PlanTier,
    ResourceKind,
    Subscription,
    SubscriptionStatus,
    UsageCounters,
)
from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.exceptions import DuplicateError


logger = logging.getLogger(__name__)


_USAGE_COLUMNS = {
    ResourceKind.IMAGE: SubscriptionModel.images_generated,
    ResourceKind.MODEL: SubscriptionModel.models_generated,
    ResourceKind.STORAGE: SubscriptionModel.storage_used,
}


class SubscriptionRepository(ISubscriptionRepository):
    """
    Repository for subscription data access.

    Implements query and command operations with domain model mapping.
    Uses async SQLModel for database operations.
    """

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_remote_id(self, remote_subscription_id: str) -> Optional[Subscription]:
        """
        Get subscription by Stripe subscription ID.

        Args:
            remote_subscription_id: Stripe subscription ID

        Returns:
            Subscription domain model or None
        """
        async with get_session_context() as session:
            statement = select(SubscriptionModel).where(
                SubscriptionModel.remote_subscription_id == remote_subscription_id
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()

            if model:
                return self._to_domain(model)

            return None

    async def list_by_user(self, user_id: str) -> list[Subscription]:
        """All subscriptions ever recorded for a user, oldest first."""
        async with get_session_context() as session:
            statement = (
                select(SubscriptionModel)
                .where(SubscriptionModel.user_id == user_id)
                .order_by(SubscriptionModel.created_at)
            )
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]

    async def get_entitled_for_user(self, user_id: str) -> Optional[Subscription]:
        """
        Get the subscription that decides a user's entitlement.

        Active or trialing, latest period end first, newest record on ties.
        """
        async with get_session_context() as session:
            statement = (
                select(SubscriptionModel)
                .where(
                    SubscriptionModel.user_id == user_id,
                    SubscriptionModel.status.in_([s.value for s in ENTITLED_STATUSES]),
                )
                .order_by(
                    SubscriptionModel.current_period_end.desc().nulls_last(),
                    SubscriptionModel.created_at.desc(),
                )
                .limit(1)
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()
            return self._to_domain(model) if model else None

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def create(self, subscription: Subscription) -> Subscription:
        """
        Create a new subscription.

        Args:
            subscription: Subscription domain model

        Returns:
            Created subscription with ID

        Raises:
            DuplicateError: a row with the same remote subscription id exists
        """
        async with get_session_context() as session:
            model = self._to_model(subscription)
            session.add(model)

            try:
                await session.flush()
            except IntegrityError as e:
                raise DuplicateError(
                    f"Subscription {subscription.remote_subscription_id} already exists",
                    operation="create",
                    table=SubscriptionModel.__tablename__,
                    original_error=e,
                ) from e

            await session.refresh(model)
            logger.info(
                f"Created subscription {model.id} ({model.remote_subscription_id}) "
                f"for user {model.user_id}"
            )
            return self._to_domain(model)

    async def save_transition(
        self,
        subscription: Subscription,
        expected_revision: int,
        reset_usage: bool,
    ) -> bool:
        """
        Persist a planned transition if nobody wrote the row in between.

        Returns:
            True if the row was updated, False on a lost compare-and-swap
        """
        values = self._transition_values(subscription)
        values["revision"] = expected_revision + 1
        values["updated_at"] = utcnow()

        if reset_usage:
            values.update(
                images_generated=0,
                models_generated=0,
                storage_used=0,
                usage_last_reset=subscription.usage.last_reset or utcnow(),
            )

        async with get_session_context() as session:
            statement = (
                update(SubscriptionModel)
                .where(
                    SubscriptionModel.remote_subscription_id == subscription.remote_subscription_id,
                    SubscriptionModel.revision == expected_revision,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(statement)
            return result.rowcount == 1

    async def increment_usage(
        self,
        subscription_id: str,
        kind: ResourceKind,
        amount: int,
        limit: int,
        period_start: Optional[datetime],
    ) -> Optional[Subscription]:
        """
        Atomically add usage within the limit and the observed period.

        Returns:
            Updated subscription, or None if any guard failed
        """
        column = _USAGE_COLUMNS[kind]
        conditions = [
            SubscriptionModel.id == subscription_id,
            SubscriptionModel.status.in_([s.value for s in ENTITLED_STATUSES]),
        ]
        if period_start is None:
            conditions.append(SubscriptionModel.current_period_start.is_(None))
        else:
            conditions.append(SubscriptionModel.current_period_start == period_start)
        if limit != UNLIMITED:
            conditions.append(column + amount <= limit)

        async with get_session_context() as session:
            statement = (
                update(SubscriptionModel)
                .where(*conditions)
                .values({column.key: column + amount, "updated_at": utcnow()})
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(statement)
            if result.rowcount != 1:
                return None

            refreshed = await session.execute(
                select(SubscriptionModel)
                .where(SubscriptionModel.id == subscription_id)
                .execution_options(populate_existing=True)
            )
            return self._to_domain(refreshed.scalar_one())

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _transition_values(self, domain: Subscription) -> dict[str, Any]:
        """Columns owned by state transitions (never usage counters)."""
        return {
            "remote_customer_id": domain.remote_customer_id,
            "remote_price_id": domain.remote_price_id,
            "remote_product_id": domain.remote_product_id,
            "status": domain.status.value,
            "plan_name": domain.plan.name,
            "plan_tier": domain.plan.tier.value,
            "price_amount": domain.plan.price.amount,
            "price_currency": domain.plan.price.currency,
            "price_interval": domain.plan.price.interval,
            "price_interval_count": domain.plan.price.interval_count,
            "plan_features": list(domain.plan.features),
            "plan_limits": domain.plan.limits.model_dump(),
            "current_period_start": domain.billing.current_period_start,
            "current_period_end": domain.billing.current_period_end,
            "trial_start": domain.billing.trial_start,
            "trial_end": domain.billing.trial_end,
            "cancel_at_period_end": domain.billing.cancel_at_period_end,
            "canceled_at": domain.billing.canceled_at,
            "cancellation_reason": domain.billing.cancellation_reason,
            "version": domain.version,
        }

    def _to_domain(self, model: SubscriptionModel) -> Subscription:
        """Convert database model to domain entity."""
        return Subscription(
            id=model.id,
            user_id=model.user_id,
            remote_subscription_id=model.remote_subscription_id,
            remote_customer_id=model.remote_customer_id,
            remote_price_id=model.remote_price_id,
            remote_product_id=model.remote_product_id,
            status=SubscriptionStatus(model.status),
            plan=Plan(
                name=model.plan_name,
                tier=PlanTier(model.plan_tier),
                price=PlanPrice(
                    amount=model.price_amount,
                    currency=model.price_currency,
                    interval=model.price_interval,
                    interval_count=model.price_interval_count or 1,
                ),
                features=list(model.plan_features or []),
                limits=PlanLimits(**(model.plan_limits or {})),
            ),
            billing=BillingInfo(
                current_period_start=model.current_period_start,
                current_period_end=model.current_period_end,
                trial_start=model.trial_start,
                trial_end=model.trial_end,
                cancel_at_period_end=model.cancel_at_period_end or False,
                canceled_at=model.canceled_at,
                cancellation_reason=model.cancellation_reason,
            ),
            usage=UsageCounters(
                images_generated=model.images_generated or 0,
                models_generated=model.models_generated or 0,
                storage_used=model.storage_used or 0,
                last_reset=model.usage_last_reset,
            ),
            version=model.version,
            revision=model.revision,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, domain: Subscription) -> SubscriptionModel:
        """Convert domain entity to database model."""
        model = SubscriptionModel(
            user_id=domain.user_id,
            remote_subscription_id=domain.remote_subscription_id,
            images_generated=domain.usage.images_generated,
            models_generated=domain.usage.models_generated,
            storage_used=domain.usage.storage_used,
            usage_last_reset=domain.usage.last_reset,
            revision=domain.revision,
            **self._transition_values(domain),
        )
        if domain.id:
            model.id = domain.id
        return model
