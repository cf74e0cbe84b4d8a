"""
Projection Updater

Recomputes a user's "current plan" summary from the canonical
subscription rows and writes it onto the user record.

A failed write never blocks the canonical change that triggered it: the
refresh is retried in the background with bounded exponential backoff,
and every retry recomputes from canonical state rather than replaying
what the first attempt computed.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from app.domain.interfaces import ISubscriptionRepository, IUserStore
from app.domain.plan_catalog import IPlanCatalog
from app.domain.subscription import (
    PlanTier,
    Subscription,
    UserProjection,
    select_canonical,
)
from app.infrastructure.exceptions import BillingSyncError


logger = logging.getLogger(__name__)


class ProjectionUpdater:
    """Sole writer of the plan projection on user rows."""

    def __init__(
        self,
        subscriptions: ISubscriptionRepository,
        users: IUserStore,
        catalog: IPlanCatalog,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
    ):
        self._subscriptions = subscriptions
        self._users = users
        self._catalog = catalog
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._pending: dict[str, asyncio.Task] = {}

    def compute(self, user_id: str, subscriptions: list[Subscription]) -> UserProjection:
        """
        Build the projection for a user.

        Entitled subscription with the latest period end wins; with none,
        the user is on the free plan (status kept for display).
        """
        versions = [sub.version for sub in subscriptions if sub.version is not None]
        version: Optional[datetime] = max(versions) if versions else None

        canonical = select_canonical(subscriptions)
        if canonical is not None:
            return UserProjection(
                user_id=user_id,
                tier=canonical.plan.tier,
                status=canonical.status,
                expires_at=canonical.billing.current_period_end,
                features=list(canonical.plan.features),
                remote_subscription_id=canonical.remote_subscription_id,
                version=version,
            )

        latest = max(subscriptions, key=lambda sub: sub.updated_at, default=None)
        return UserProjection(
            user_id=user_id,
            tier=PlanTier.FREE,
            status=latest.status if latest is not None else None,
            features=list(self._catalog.free_plan().features),
            version=version,
        )

    async def refresh(self, user_id: str) -> bool:
        """
        Recompute and write the projection now; on failure queue a retry.

        Returns:
            True if the projection was written
        """
        try:
            return await self._write(user_id)
        except (BillingSyncError, SQLAlchemyError) as e:
            logger.error(f"Projection update failed for user {user_id}: {e}; scheduling retry")
            self._schedule_retry(user_id)
            return False

    async def _write(self, user_id: str) -> bool:
        subscriptions = await self._subscriptions.list_by_user(user_id)
        projection = self.compute(user_id, subscriptions)
        written = await self._users.write_projection(projection)

        if written:
            logger.info(f"Projection for user {user_id}: {projection.tier.value}")
        else:
            logger.info(f"Projection for user {user_id} not written (newer version stored or unknown user)")
        return written

    def _schedule_retry(self, user_id: str) -> None:
        existing = self._pending.get(user_id)
        if existing is not None and not existing.done():
            return

        task = asyncio.create_task(self._retry(user_id))
        self._pending[user_id] = task
        task.add_done_callback(lambda finished: self._forget(user_id, finished))

    def _forget(self, user_id: str, task: asyncio.Task) -> None:
        if self._pending.get(user_id) is task:
            del self._pending[user_id]

    async def _retry(self, user_id: str) -> None:
        for attempt in range(self._max_attempts):
            delay = min(self._base_delay * (2 ** attempt), self._max_delay)
            await asyncio.sleep(delay)
            try:
                await self._write(user_id)
                logger.info(f"Projection for user {user_id} recovered after {attempt + 1} retries")
                return
            except (BillingSyncError, SQLAlchemyError) as e:
                logger.warning(f"Projection retry {attempt + 1}/{self._max_attempts} for user {user_id} failed: {e}")

        logger.error(
            f"Giving up on projection for user {user_id} after {self._max_attempts} retries; "
            f"reconciliation will repair it"
        )

    @property
    def pending(self) -> int:
        return sum(1 for task in self._pending.values() if not task.done())

    async def drain(self) -> None:
        """Wait for queued retries (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)
