"""
SQLModel ORM Models for the Billing Sync Service

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import (
    IDMixin,
    TimestampMixin,
    UTCDateTime,
)
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.models.user import UserModel
from app.infrastructure.db.models.usage_ledger import UsageLedgerModel
from app.infrastructure.db.models.webhook_event import WebhookEventModel


__all__ = [
    # Base
    "IDMixin",
    "TimestampMixin",
    "UTCDateTime",
    # Tables
    "SubscriptionModel",
    "UserModel",
    "UsageLedgerModel",
    "WebhookEventModel",
]
