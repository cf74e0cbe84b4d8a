"""
Webhook Event Repository

DB-backed event log for provider webhooks (survives restarts).

Claim protocol:
- first delivery inserts the row as "processing"
- completed or dead-lettered events are never claimed again
- "processing" rows older than the stuck window, and "failed" rows, are
  re-claimed with a conditional UPDATE so only one worker wins
- a "processing" row inside the window is reported as in progress; the
  caller must not acknowledge it
"""

import logging
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from app.domain.interfaces import IWebhookEventLog
from app.domain.webhook_event import ClaimOutcome, WebhookEventRecord, WebhookEventStatus
from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.webhook_event import WebhookEventModel


logger = logging.getLogger(__name__)


class WebhookEventRepository(IWebhookEventLog):
    """Repository for the billing webhook event log."""

    def __init__(self, processing_timeout_seconds: int = 300):
        self._processing_timeout = timedelta(seconds=processing_timeout_seconds)

    # =========================================================================
    # Claiming
    # =========================================================================

    async def begin(self, event_id: str, event_type: str, payload: dict[str, Any]) -> ClaimOutcome:
        now = utcnow()
        try:
            async with get_session_context() as session:
                session.add(WebhookEventModel(
                    event_id=event_id,
                    event_type=event_type,
                    status=WebhookEventStatus.PROCESSING.value,
                    payload=payload,
                    received_at=now,
                    started_at=now,
                ))
                await session.flush()
            return ClaimOutcome.CLAIMED
        except IntegrityError:
            pass

        existing = await self._get_model(event_id)
        if existing is None:
            return ClaimOutcome.IN_PROGRESS

        status = WebhookEventStatus(existing.status)
        if status in (WebhookEventStatus.COMPLETED, WebhookEventStatus.DEAD_LETTER):
            logger.info(f"Event {event_id} already {status.value}, skipping")
            return ClaimOutcome.DONE

        if status == WebhookEventStatus.PROCESSING and existing.started_at > now - self._processing_timeout:
            logger.info(f"Event {event_id} is being processed elsewhere")
            return ClaimOutcome.IN_PROGRESS

        claimed = await self._claim(event_id, status, existing.started_at)
        if not claimed:
            return ClaimOutcome.IN_PROGRESS
        logger.info(f"Re-claimed event {event_id} (was {status.value})")
        return ClaimOutcome.CLAIMED

    async def reopen(self, event_id: str) -> Optional[WebhookEventRecord]:
        existing = await self._get_model(event_id)
        if existing is None:
            return None

        status = WebhookEventStatus(existing.status)
        if status not in (WebhookEventStatus.FAILED, WebhookEventStatus.DEAD_LETTER):
            return None

        if not await self._claim(event_id, status, existing.started_at):
            return None
        return await self.get(event_id)

    async def _claim(self, event_id: str, seen_status: WebhookEventStatus, seen_started_at) -> bool:
        async with get_session_context() as session:
            result = await session.execute(
                update(WebhookEventModel)
                .where(
                    WebhookEventModel.event_id == event_id,
                    WebhookEventModel.status == seen_status.value,
                    WebhookEventModel.started_at == seen_started_at,
                )
                .values(
                    status=WebhookEventStatus.PROCESSING.value,
                    attempts=WebhookEventModel.attempts + 1,
                    started_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # =========================================================================
    # Outcomes
    # =========================================================================

    async def mark_completed(self, event_id: str, outcome: str) -> None:
        await self._finish(event_id, WebhookEventStatus.COMPLETED, outcome=outcome, last_error=None)

    async def mark_failed(self, event_id: str, error: str) -> None:
        await self._finish(event_id, WebhookEventStatus.FAILED, last_error=error)

    async def mark_dead_letter(self, event_id: str, reason: str) -> None:
        await self._finish(event_id, WebhookEventStatus.DEAD_LETTER, outcome="dead_letter", last_error=reason)

    async def _finish(self, event_id: str, status: WebhookEventStatus, **values) -> None:
        async with get_session_context() as session:
            await session.execute(
                update(WebhookEventModel)
                .where(WebhookEventModel.event_id == event_id)
                .values(status=status.value, completed_at=utcnow(), **values)
                .execution_options(synchronize_session=False)
            )

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, event_id: str) -> Optional[WebhookEventRecord]:
        model = await self._get_model(event_id)
        return self._to_domain(model) if model else None

    async def list_by_status(self, status: WebhookEventStatus, limit: int = 50) -> list[WebhookEventRecord]:
        async with get_session_context() as session:
            result = await session.execute(
                select(WebhookEventModel)
                .where(WebhookEventModel.status == status.value)
                .order_by(WebhookEventModel.received_at.desc())
                .limit(limit)
            )
            return [self._to_domain(model) for model in result.scalars().all()]

    async def _get_model(self, event_id: str) -> Optional[WebhookEventModel]:
        async with get_session_context() as session:
            return await session.get(WebhookEventModel, event_id)

    def _to_domain(self, model: WebhookEventModel) -> WebhookEventRecord:
        return WebhookEventRecord(
            event_id=model.event_id,
            event_type=model.event_type,
            status=WebhookEventStatus(model.status),
            payload=model.payload or {},
            attempts=model.attempts,
            outcome=model.outcome,
            last_error=model.last_error,
            received_at=model.received_at,
            completed_at=model.completed_at,
        )
