"""
User Repository

Reads user rows and writes the two things billing owns on them: the
provider links (customer id, last checkout session) and the plan
projection.
"""

import logging
from typing import Optional

from sqlalchemy import exists, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from app.domain.interfaces import IUserStore
from app.domain.subscription import (
    ENTITLED_STATUSES,
    PlanTier,
    SubscriptionStatus,
    UserProjection,
)
from app.domain.user import UserAccount
from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.models.user import UserModel


logger = logging.getLogger(__name__)


class UserRepository(IUserStore):
    """Repository for the billing view of user rows."""

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get(self, user_id: str) -> Optional[UserAccount]:
        async with get_session_context() as session:
            model = await session.get(UserModel, user_id)
            return self._to_domain(model) if model else None

    async def get_by_customer_id(self, customer_id: str) -> Optional[UserAccount]:
        async with get_session_context() as session:
            result = await session.execute(
                select(UserModel).where(UserModel.stripe_customer_id == customer_id)
            )
            model = result.scalar_one_or_none()
            return self._to_domain(model) if model else None

    async def list_heal_candidates(self, limit: int) -> list[UserAccount]:
        """
        Users who started a checkout but hold no entitled subscription.

        These are the users a lost checkout webhook would leave behind.
        """
        entitled = exists().where(
            SubscriptionModel.user_id == UserModel.id,
            SubscriptionModel.status.in_([s.value for s in ENTITLED_STATUSES]),
        )
        async with get_session_context() as session:
            result = await session.execute(
                select(UserModel)
                .where(UserModel.last_checkout_session_id.is_not(None), ~entitled)
                .order_by(UserModel.updated_at.desc())
                .limit(limit)
            )
            return [self._to_domain(model) for model in result.scalars().all()]

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def link_customer(self, user_id: str, customer_id: str) -> None:
        """Attach a provider customer id unless the user already has one."""
        try:
            async with get_session_context() as session:
                await session.execute(
                    update(UserModel)
                    .where(UserModel.id == user_id, UserModel.stripe_customer_id.is_(None))
                    .values(stripe_customer_id=customer_id, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError:
            logger.warning(f"Customer {customer_id} is already linked to another user; not linking to {user_id}")

    async def remember_checkout_session(self, user_id: str, session_id: str) -> None:
        async with get_session_context() as session:
            await session.execute(
                update(UserModel)
                .where(UserModel.id == user_id)
                .values(last_checkout_session_id=session_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

    async def write_projection(self, projection: UserProjection) -> bool:
        """
        Last-write-wins by projection version, not by arrival time.

        Returns:
            True if the row was written
        """
        conditions = [UserModel.id == projection.user_id]
        if projection.version is None:
            conditions.append(UserModel.projection_version.is_(None))
        else:
            conditions.append(or_(
                UserModel.projection_version.is_(None),
                UserModel.projection_version <= projection.version,
            ))

        async with get_session_context() as session:
            result = await session.execute(
                update(UserModel)
                .where(*conditions)
                .values(
                    subscription_tier=projection.tier.value,
                    subscription_status=projection.status.value if projection.status else None,
                    subscription_expires_at=projection.expires_at,
                    subscription_features=list(projection.features),
                    subscription_remote_id=projection.remote_subscription_id,
                    projection_version=projection.version,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _to_domain(self, model: UserModel) -> UserAccount:
        """Convert database model to domain entity."""
        return UserAccount(
            id=model.id,
            email=model.email,
            stripe_customer_id=model.stripe_customer_id,
            last_checkout_session_id=model.last_checkout_session_id,
            projection=UserProjection(
                user_id=model.id,
                tier=PlanTier(model.subscription_tier or PlanTier.FREE.value),
                status=SubscriptionStatus(model.subscription_status) if model.subscription_status else None,
                expires_at=model.subscription_expires_at,
                features=list(model.subscription_features or []),
                remote_subscription_id=model.subscription_remote_id,
                version=model.projection_version,
            ),
            created_at=model.created_at,
        )
