"""
Repository Layer for the Billing Sync Service

Exports all repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from app.infrastructure.db.repositories.usage_ledger_repository import (
    UsageLedgerRepository,
)
from app.infrastructure.db.repositories.user_repository import (
    UserRepository,
)
from app.infrastructure.db.repositories.webhook_event_repository import (
    WebhookEventRepository,
)


__all__ = [
    "SubscriptionRepository",
    "UsageLedgerRepository",
    "UserRepository",
    "WebhookEventRepository",
]
