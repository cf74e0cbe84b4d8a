"""
Billing Event Router

Dispatches verified provider events to the Subscription Store and keeps
the webhook event log in step:

- begin: claim the event id (finished events are acknowledged and skipped,
  events still in flight elsewhere are answered with a retryable error)
- dispatch: translate the event into a SubscriptionChange and apply it
- finish: completed, dead_letter (subject unresolvable) or failed

Failed events propagate so the endpoint answers 5xx and the provider
redelivers. Dead-lettered events are acknowledged and wait for an
operator replay.
"""

import logging
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import BaseModel

from app.domain.billing_events import (
    BillingEventBase,
    CheckoutCompletedEvent,
    EventDecodeError,
    InvoiceEvent,
    ProviderSubscription,
    SubscriptionChangedEvent,
    decode_event,
)
from app.domain.interfaces import (
    IProviderClient,
    ISubscriptionRepository,
    IUserStore,
    IWebhookEventLog,
)
from app.domain.plan_catalog import IPlanCatalog, tier_from_metadata
from app.domain.state_machine import SubscriptionChange
from app.domain.webhook_event import ClaimOutcome
from app.infrastructure.exceptions import (
    NotFoundError,
    TransientStoreError,
    UnknownSubjectError,
    ValidationError,
)
from app.infrastructure.payments.event_verifier import VerifiedEvent
from app.infrastructure.services.subscription_store import SubscriptionStore


logger = logging.getLogger(__name__)


class DispatchResult(BaseModel):
    outcome: str
    remote_subscription_id: Optional[str] = None
    detail: Optional[str] = None


class IngestResult(BaseModel):
    event_id: str
    event_type: str
    status: Literal["processed", "duplicate", "dead_letter"]
    outcome: Optional[str] = None


Handler = Callable[[Any, Optional[str]], Awaitable[DispatchResult]]


class BillingEventRouter:
    """Routes each event kind to its handler."""

    def __init__(
        self,
        store: SubscriptionStore,
        provider: IProviderClient,
        subscriptions: ISubscriptionRepository,
        users: IUserStore,
        event_log: IWebhookEventLog,
        catalog: IPlanCatalog,
    ):
        self._store = store
        self._provider = provider
        self._subscriptions = subscriptions
        self._users = users
        self._event_log = event_log
        self._catalog = catalog
        self._handlers: dict[str, Handler] = {
            "checkout_completed": self._on_checkout_completed,
            "subscription_changed": self._on_subscription_changed,
            "invoice": self._on_invoice,
            "ignored": self._on_ignored,
        }

    # =========================================================================
    # Entry Points
    # =========================================================================

    async def ingest(self, verified: VerifiedEvent) -> IngestResult:
        """Process a freshly verified webhook delivery exactly once."""
        event = verified.event

        claim = await self._event_log.begin(event.event_id, event.event_type, verified.payload)
        if claim == ClaimOutcome.IN_PROGRESS:
            logger.warning(f"Event {event.event_id} ({event.event_type}) is still in flight, asking for redelivery")
            raise TransientStoreError(
                f"Event {event.event_id} is still being processed",
                operation="ingest",
                table="billing_webhook_events",
            )
        if claim == ClaimOutcome.DONE:
            logger.info(f"Event {event.event_id} ({event.event_type}) already handled, acknowledging")
            return IngestResult(
                event_id=event.event_id,
                event_type=event.event_type,
                status="duplicate",
            )

        return await self._process(event)

    async def replay(self, event_id: str, user_id: Optional[str] = None) -> IngestResult:
        """
        Re-run a failed or dead-lettered event from its stored payload.

        Args:
            event_id: Provider event id
            user_id: Owner to use when the event itself does not name one
        """
        record = await self._event_log.reopen(event_id)
        if record is None:
            raise NotFoundError(
                f"No failed or dead-lettered event {event_id}",
                operation="replay",
                table="billing_webhook_events",
            )

        try:
            event = decode_event(record.payload)
        except EventDecodeError as e:
            await self._event_log.mark_dead_letter(event_id, f"undecodable payload: {e}")
            raise ValidationError(f"Stored payload for {event_id} cannot be decoded: {e}") from e

        logger.info(f"Replaying event {event_id} ({record.event_type}) user_id={user_id}")
        return await self._process(event, user_id)

    async def dispatch(self, event: BillingEventBase, user_id: Optional[str] = None) -> DispatchResult:
        handler = self._handlers[event.kind]
        return await handler(event, user_id)

    async def _process(self, event: BillingEventBase, user_id: Optional[str] = None) -> IngestResult:
        try:
            result = await self.dispatch(event, user_id)
        except UnknownSubjectError as e:
            logger.error(f"Dead-lettering event {event.event_id} ({event.event_type}): {e.message}")
            await self._event_log.mark_dead_letter(event.event_id, e.message)
            return IngestResult(
                event_id=event.event_id,
                event_type=event.event_type,
                status="dead_letter",
            )
        except Exception as e:
            logger.error(f"Event {event.event_id} ({event.event_type}) failed: {e}")
            await self._event_log.mark_failed(event.event_id, str(e))
            raise

        await self._event_log.mark_completed(event.event_id, result.outcome)
        logger.info(
            f"Event {event.event_id} ({event.event_type}) -> {result.outcome}"
            f"{f' [{result.remote_subscription_id}]' if result.remote_subscription_id else ''}"
        )
        return IngestResult(
            event_id=event.event_id,
            event_type=event.event_type,
            status="processed",
            outcome=result.outcome,
        )

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _on_checkout_completed(
        self,
        event: CheckoutCompletedEvent,
        user_id: Optional[str],
    ) -> DispatchResult:
        session = event.session
        if not session.is_subscription:
            return DispatchResult(outcome="ignored", detail=f"checkout mode {session.mode}")
        if not session.remote_subscription_id:
            return DispatchResult(outcome="ignored", detail="checkout without a subscription")

        owner = user_id or session.user_id
        if owner:
            if session.customer_id:
                await self._users.link_customer(owner, session.customer_id)
            await self._users.remember_checkout_session(owner, session.id)

        snapshot = session.subscription or await self._pull(session.remote_subscription_id)
        change = SubscriptionChange.from_snapshot(
            snapshot,
            event.created,
            user_id=owner,
            tier_hint=tier_from_metadata(session.metadata),
            event_id=event.event_id,
        )
        result = await self._store.apply_event(change)
        return DispatchResult(outcome=result.outcome.value, remote_subscription_id=snapshot.id)

    async def _on_subscription_changed(
        self,
        event: SubscriptionChangedEvent,
        user_id: Optional[str],
    ) -> DispatchResult:
        snapshot = event.subscription

        if (
            event.action == "created"
            and snapshot.product_metadata is None
            and self._catalog.resolve_tier(snapshot) is None
        ):
            snapshot = await self._with_product_metadata(snapshot)

        change = SubscriptionChange.from_snapshot(
            snapshot,
            event.created,
            user_id=user_id,
            event_id=event.event_id,
        )
        result = await self._store.apply_event(change)
        return DispatchResult(outcome=result.outcome.value, remote_subscription_id=snapshot.id)

    async def _on_invoice(self, event: InvoiceEvent, user_id: Optional[str]) -> DispatchResult:
        remote_id = event.remote_subscription_id
        if not remote_id:
            return DispatchResult(outcome="ignored", detail="invoice without a subscription")

        if await self._subscriptions.get_by_remote_id(remote_id) is None:
            # First sighting through an invoice: build the record from provider state
            snapshot = await self._pull(remote_id)
            change = SubscriptionChange.from_snapshot(
                snapshot,
                event.created,
                user_id=user_id,
                event_id=event.event_id,
            )
        else:
            change = SubscriptionChange.from_invoice(event)

        result = await self._store.apply_event(change)
        return DispatchResult(outcome=result.outcome.value, remote_subscription_id=remote_id)

    async def _on_ignored(self, event: BillingEventBase, user_id: Optional[str]) -> DispatchResult:
        logger.info(f"Unhandled event type: {event.event_type}")
        return DispatchResult(outcome="ignored", detail=event.event_type)

    # =========================================================================
    # Provider Lookups
    # =========================================================================

    async def _pull(self, remote_subscription_id: str) -> ProviderSubscription:
        raw = await self._provider.retrieve_subscription(remote_subscription_id)
        if raw is None:
            raise UnknownSubjectError(
                f"Subscription {remote_subscription_id} not found at provider",
                remote_subscription_id=remote_subscription_id,
            )
        return ProviderSubscription.from_stripe(raw)

    async def _with_product_metadata(self, snapshot: ProviderSubscription) -> ProviderSubscription:
        """Attach product metadata so the plan can be resolved from it."""
        if not snapshot.product_id:
            return snapshot

        product = await self._provider.retrieve_product(snapshot.product_id)
        if product is None:
            logger.warning(f"Product {snapshot.product_id} not found for {snapshot.id}")
            return snapshot

        return snapshot.model_copy(update={"product_metadata": dict(product.get("metadata") or {})})
