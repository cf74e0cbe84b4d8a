"""
Webhook Event Log Model

Replaces the bare processed-event table: keeps the payload and processing
status so failed and dead-lettered events can be inspected and replayed.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON
from sqlmodel import Field, SQLModel

from app.infrastructure.db.models.base import UTCDateTime, utcnow


class WebhookEventModel(SQLModel, table=True):
    __tablename__ = "billing_webhook_events"

    event_id: str = Field(primary_key=True, max_length=255)
    event_type: str = Field(max_length=100, nullable=False)
    status: str = Field(default="processing", index=True, max_length=20)
    payload: dict = Field(default_factory=dict, sa_type=JSON)
    attempts: int = Field(default=1)
    outcome: Optional[str] = Field(default=None, max_length=32)
    last_error: Optional[str] = Field(default=None)
    received_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime(), index=True)
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime())
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime())
