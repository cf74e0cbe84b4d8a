"""
Webhook Event Log Domain Model

One record per provider event id, tracking how far processing got.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import Field

from app.domain.subscription import DomainModel


class WebhookEventStatus(str, Enum):
    """Processing state of a received provider event."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class WebhookEventRecord(DomainModel):
    event_id: str
    event_type: str
    status: WebhookEventStatus
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 1
    outcome: Optional[str] = None
    last_error: Optional[str] = None
    received_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ClaimOutcome(str, Enum):
    """Result of trying to claim an event id for processing."""
    CLAIMED = "claimed"
    DONE = "done"
    IN_PROGRESS = "in_progress"
