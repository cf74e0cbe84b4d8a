"""
Usage Ledger Repository

Free-tier usage counters, one row per user, scoped to a calendar month.
Month rollover and increments are conditional UPDATEs so concurrent
requests from several workers never double-reset or overshoot a limit.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from app.domain.interfaces import IUsageLedgerRepository
from app.domain.subscription import (
    UNLIMITED,
    FreeUsageLedger,
    ResourceKind,
    UsageCounters,
)
from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.usage_ledger import UsageLedgerModel


logger = logging.getLogger(__name__)


_USAGE_COLUMNS = {
    ResourceKind.IMAGE: UsageLedgerModel.images_generated,
    ResourceKind.MODEL: UsageLedgerModel.models_generated,
    ResourceKind.STORAGE: UsageLedgerModel.storage_used,
}


class UsageLedgerRepository(IUsageLedgerRepository):
    """Repository for free-tier usage ledgers."""

    async def get_or_open(self, user_id: str, period_start: datetime) -> FreeUsageLedger:
        ledger = await self._get(user_id)

        if ledger is None:
            if await self._insert(user_id, period_start):
                logger.info(f"Opened free usage ledger for user {user_id}")
            ledger = await self._get(user_id)

        elif ledger.period_start < period_start:
            if await self._roll_over(user_id, ledger.period_start, period_start):
                logger.info(
                    f"Reset free usage for user {user_id}: "
                    f"{ledger.period_start.date()} -> {period_start.date()}"
                )
            ledger = await self._get(user_id)

        return ledger

    async def increment(
        self,
        user_id: str,
        kind: ResourceKind,
        amount: int,
        limit: int,
        period_start: datetime,
    ) -> Optional[FreeUsageLedger]:
        column = _USAGE_COLUMNS[kind]
        conditions = [
            UsageLedgerModel.user_id == user_id,
            UsageLedgerModel.period_start == period_start,
        ]
        if limit != UNLIMITED:
            conditions.append(column + amount <= limit)

        async with get_session_context() as session:
            statement = (
                update(UsageLedgerModel)
                .where(*conditions)
                .values({column.key: column + amount, "updated_at": utcnow()})
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(statement)

        if result.rowcount != 1:
            return None
        return await self._get(user_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _get(self, user_id: str) -> Optional[FreeUsageLedger]:
        async with get_session_context() as session:
            result = await session.execute(
                select(UsageLedgerModel).where(UsageLedgerModel.user_id == user_id)
            )
            model = result.scalar_one_or_none()
            return self._to_domain(model) if model else None

    async def _insert(self, user_id: str, period_start: datetime) -> bool:
        """Create the ledger row. False if a concurrent request created it first."""
        try:
            async with get_session_context() as session:
                session.add(UsageLedgerModel(
                    user_id=user_id,
                    period_start=period_start,
                    last_reset=utcnow(),
                ))
                await session.flush()
        except IntegrityError:
            return False
        return True

    async def _roll_over(self, user_id: str, seen_period: datetime, new_period: datetime) -> bool:
        """Zero the counters once; only the caller that still sees the old period wins."""
        async with get_session_context() as session:
            result = await session.execute(
                update(UsageLedgerModel)
                .where(
                    UsageLedgerModel.user_id == user_id,
                    UsageLedgerModel.period_start == seen_period,
                )
                .values(
                    period_start=new_period,
                    images_generated=0,
                    models_generated=0,
                    storage_used=0,
                    last_reset=utcnow(),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def _to_domain(self, model: UsageLedgerModel) -> FreeUsageLedger:
        return FreeUsageLedger(
            user_id=model.user_id,
            period_start=model.period_start,
            usage=UsageCounters(
                images_generated=model.images_generated or 0,
                models_generated=model.models_generated or 0,
                storage_used=model.storage_used or 0,
                last_reset=model.last_reset,
            ),
        )
