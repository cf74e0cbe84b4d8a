"""
Domain Interfaces

Abstract collaborators the billing services depend on. Services receive
concrete implementations through their constructors; the SQL-backed ones
live in app.infrastructure.db.repositories, the Stripe client in
app.infrastructure.payments.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from app.domain.subscription import (
    FreeUsageLedger,
    ResourceKind,
    Subscription,
    UserProjection,
    select_canonical,
)
from app.domain.user import UserAccount
from app.domain.webhook_event import ClaimOutcome, WebhookEventRecord, WebhookEventStatus


class ISubscriptionRepository(ABC):
    """Canonical subscription records."""

    @abstractmethod
    async def get_by_remote_id(self, remote_subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str) -> list[Subscription]:
        pass

    @abstractmethod
    async def create(self, subscription: Subscription) -> Subscription:
        """Insert a new record. Raises DuplicateError if the remote id exists."""
        pass

    @abstractmethod
    async def save_transition(
        self,
        subscription: Subscription,
        expected_revision: int,
        reset_usage: bool,
    ) -> bool:
        """
        Write status, billing and plan fields if the stored revision still
        equals `expected_revision`. Usage columns are only written when
        `reset_usage` is set. Returns False on a lost race.
        """
        pass

    @abstractmethod
    async def increment_usage(
        self,
        subscription_id: str,
        kind: ResourceKind,
        amount: int,
        limit: int,
        period_start: Optional[datetime],
    ) -> Optional[Subscription]:
        """
        Add `amount` to the counter for `kind` only while the record is
        entitled, still in `period_start`, and the result stays within
        `limit` (-1 for no limit). Returns the updated record or None.
        """
        pass

    async def get_entitled_for_user(self, user_id: str) -> Optional[Subscription]:
        return select_canonical(await self.list_by_user(user_id))


class IUsageLedgerRepository(ABC):
    """Free-tier usage counters keyed by user and calendar month."""

    @abstractmethod
    async def get_or_open(self, user_id: str, period_start: datetime) -> FreeUsageLedger:
        """
        Return the ledger for `period_start`, creating it or rolling an older
        period over (counters zeroed, last_reset stamped) as needed.
        """
        pass

    @abstractmethod
    async def increment(
        self,
        user_id: str,
        kind: ResourceKind,
        amount: int,
        limit: int,
        period_start: datetime,
    ) -> Optional[FreeUsageLedger]:
        pass


class IUserStore(ABC):
    """User rows: provider links and the denormalized plan projection."""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserAccount]:
        pass

    @abstractmethod
    async def get_by_customer_id(self, customer_id: str) -> Optional[UserAccount]:
        pass

    @abstractmethod
    async def link_customer(self, user_id: str, customer_id: str) -> None:
        pass

    @abstractmethod
    async def remember_checkout_session(self, user_id: str, session_id: str) -> None:
        pass

    @abstractmethod
    async def write_projection(self, projection: UserProjection) -> bool:
        """
        Write the projection unless the stored one carries a newer version.
        Returns False when the write was skipped or the user does not exist.
        """
        pass

    @abstractmethod
    async def list_heal_candidates(self, limit: int) -> list[UserAccount]:
        """Users with a remembered checkout session but no entitled subscription."""
        pass


class IWebhookEventLog(ABC):
    """Per-event processing bookkeeping for provider webhooks."""

    @abstractmethod
    async def begin(self, event_id: str, event_type: str, payload: dict[str, Any]) -> ClaimOutcome:
        """
        Claim an event for processing.

        DONE when it is already completed or dead-lettered, IN_PROGRESS when
        another attempt holds it inside the processing window.
        """
        pass

    @abstractmethod
    async def reopen(self, event_id: str) -> Optional[WebhookEventRecord]:
        """Move a failed or dead-lettered event back to processing for a replay."""
        pass

    @abstractmethod
    async def mark_completed(self, event_id: str, outcome: str) -> None:
        pass

    @abstractmethod
    async def mark_failed(self, event_id: str, error: str) -> None:
        pass

    @abstractmethod
    async def mark_dead_letter(self, event_id: str, reason: str) -> None:
        pass

    @abstractmethod
    async def get(self, event_id: str) -> Optional[WebhookEventRecord]:
        pass

    @abstractmethod
    async def list_by_status(self, status: WebhookEventStatus, limit: int = 50) -> list[WebhookEventRecord]:
        pass


class IProviderClient(ABC):
    """Payment provider queries. Returns raw provider objects as dicts."""

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> Optional[dict]:
        pass

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str) -> Optional[dict]:
        """Checkout session with its subscription and customer expanded."""
        pass

    @abstractmethod
    async def retrieve_price(self, price_id: str) -> Optional[dict]:
        pass

    @abstractmethod
    async def retrieve_product(self, product_id: str) -> Optional[dict]:
        pass

    @abstractmethod
    async def list_customer_subscriptions(self, customer_id: str, limit: int = 10) -> list[dict]:
        pass

    @abstractmethod
    async def find_customer_id(self, user_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def get_or_create_customer(
        self,
        user_id: str,
        email: Optional[str],
        existing_customer_id: Optional[str] = None,
    ) -> str:
        pass

    @abstractmethod
    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        tier: str,
        success_url: str,
        cancel_url: str,
        user_id: str,
    ) -> dict:
        pass

    @abstractmethod
    async def cancel_subscription(
        self,
        subscription_id: str,
        at_period_end: bool = True,
        reason: Optional[str] = None,
    ) -> Optional[dict]:
        """
        Cancel now, or flag for cancellation at the end of the paid period.
        Returns the updated subscription, or None if it does not exist.
        """
        pass
