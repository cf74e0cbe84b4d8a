"""
In-memory collaborators for the billing services.

Each fake mirrors the conditional-write semantics of its SQL repository
(revision compare-and-swap, bounded increments, version-guarded
projection writes) and yields to the event loop between reads and writes
so concurrent tests actually interleave.
"""

import asyncio
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import uuid4

import jwt

from app.domain.interfaces import (
    IProviderClient,
    ISubscriptionRepository,
    IUsageLedgerRepository,
    IUserStore,
    IWebhookEventLog,
)
from app.domain.subscription import (
    ENTITLED_STATUSES,
    UNLIMITED,
    FreeUsageLedger,
    ResourceKind,
    Subscription,
    UsageCounters,
    UserProjection,
    utc_now,
)
from app.domain.user import UserAccount
from app.domain.webhook_event import ClaimOutcome, WebhookEventRecord, WebhookEventStatus
from app.infrastructure.exceptions import DuplicateError, ProviderError, TransientStoreError


WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_KEY = "admin-test-key"
JWT_SECRET = "test-jwt-secret-with-enough-bytes-for-hs256"

_COUNTER_FIELDS = {
    ResourceKind.IMAGE: "images_generated",
    ResourceKind.MODEL: "models_generated",
    ResourceKind.STORAGE: "storage_used",
}


def ts(value: datetime) -> int:
    return int(value.timestamp())


def at(day: int, month: int = 1, year: int = 2026) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


# =============================================================================
# Stores
# =============================================================================

class FakeSubscriptionRepository(ISubscriptionRepository):
    def __init__(self):
        self.rows: dict[str, Subscription] = {}
        self.lose_next_saves = 0
        self.saves = 0

    def _by_remote(self, remote_subscription_id: str) -> Optional[Subscription]:
        for row in self.rows.values():
            if row.remote_subscription_id == remote_subscription_id:
                return row
        return None

    async def get_by_remote_id(self, remote_subscription_id: str) -> Optional[Subscription]:
        await asyncio.sleep(0)
        row = self._by_remote(remote_subscription_id)
        return row.model_copy(deep=True) if row else None

    async def list_by_user(self, user_id: str) -> list[Subscription]:
        await asyncio.sleep(0)
        return [row.model_copy(deep=True) for row in self.rows.values() if row.user_id == user_id]

    async def create(self, subscription: Subscription) -> Subscription:
        await asyncio.sleep(0)
        if self._by_remote(subscription.remote_subscription_id) is not None:
            raise DuplicateError("duplicate remote id", operation="create", table="subscriptions")
        now = utc_now()
        row = subscription.model_copy(deep=True, update={
            "id": subscription.id or str(uuid4()),
            "created_at": now,
            "updated_at": now,
        })
        self.rows[row.id] = row
        return row.model_copy(deep=True)

    async def save_transition(self, subscription: Subscription, expected_revision: int, reset_usage: bool) -> bool:
        await asyncio.sleep(0)
        if self.lose_next_saves:
            self.lose_next_saves -= 1
            self.rows[subscription.id].revision += 1
            return False

        stored = self.rows[subscription.id]
        if stored.revision != expected_revision:
            return False

        updated = subscription.model_copy(deep=True, update={"revision": expected_revision + 1})
        if not reset_usage:
            updated.usage = stored.usage.model_copy()
        self.rows[subscription.id] = updated
        self.saves += 1
        return True

    async def increment_usage(
        self,
        subscription_id: str,
        kind: ResourceKind,
        amount: int,
        limit: int,
        period_start: Optional[datetime],
    ) -> Optional[Subscription]:
        await asyncio.sleep(0)
        row = self.rows[subscription_id]
        field = _COUNTER_FIELDS[kind]
        current = getattr(row.usage, field)

        if row.status not in ENTITLED_STATUSES:
            return None
        if row.billing.current_period_start != period_start:
            return None
        if limit != UNLIMITED and current + amount > limit:
            return None

        setattr(row.usage, field, current + amount)
        return row.model_copy(deep=True)


class FakeUsageLedgerRepository(IUsageLedgerRepository):
    def __init__(self):
        self.ledgers: dict[str, FreeUsageLedger] = {}
        self.resets = 0

    async def get_or_open(self, user_id: str, period_start: datetime) -> FreeUsageLedger:
        await asyncio.sleep(0)
        ledger = self.ledgers.get(user_id)
        if ledger is None:
            ledger = self.ledgers[user_id] = FreeUsageLedger(
                user_id=user_id,
                period_start=period_start,
                usage=UsageCounters(last_reset=utc_now()),
            )
        elif ledger.period_start < period_start:
            ledger.period_start = period_start
            ledger.usage = UsageCounters(last_reset=utc_now())
            self.resets += 1
        return ledger.model_copy(deep=True)

    async def increment(
        self,
        user_id: str,
        kind: ResourceKind,
        amount: int,
        limit: int,
        period_start: datetime,
    ) -> Optional[FreeUsageLedger]:
        await asyncio.sleep(0)
        ledger = self.ledgers[user_id]
        field = _COUNTER_FIELDS[kind]
        current = getattr(ledger.usage, field)

        if ledger.period_start != period_start:
            return None
        if limit != UNLIMITED and current + amount > limit:
            return None

        setattr(ledger.usage, field, current + amount)
        return ledger.model_copy(deep=True)


class FakeUserStore(IUserStore):
    def __init__(self, subscriptions: Optional[FakeSubscriptionRepository] = None):
        self.users: dict[str, UserAccount] = {}
        self.subscriptions = subscriptions
        self.failing_projection_writes = 0
        self.projection_writes = 0

    def add(self, user_id: str, email: Optional[str] = None, customer_id: Optional[str] = None,
            checkout_session_id: Optional[str] = None) -> UserAccount:
        user = UserAccount(
            id=user_id,
            email=email or f"{user_id}@example.com",
            stripe_customer_id=customer_id,
            last_checkout_session_id=checkout_session_id,
            projection=UserProjection(user_id=user_id),
            created_at=utc_now(),
        )
        self.users[user_id] = user
        return user

    async def get(self, user_id: str) -> Optional[UserAccount]:
        await asyncio.sleep(0)
        user = self.users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def get_by_customer_id(self, customer_id: str) -> Optional[UserAccount]:
        await asyncio.sleep(0)
        for user in self.users.values():
            if user.stripe_customer_id == customer_id:
                return user.model_copy(deep=True)
        return None

    async def link_customer(self, user_id: str, customer_id: str) -> None:
        user = self.users.get(user_id)
        if user is not None and user.stripe_customer_id is None:
            user.stripe_customer_id = customer_id

    async def remember_checkout_session(self, user_id: str, session_id: str) -> None:
        user = self.users.get(user_id)
        if user is not None:
            user.last_checkout_session_id = session_id

    async def write_projection(self, projection: UserProjection) -> bool:
        await asyncio.sleep(0)
        if self.failing_projection_writes:
            self.failing_projection_writes -= 1
            raise TransientStoreError("projection store unavailable", operation="write_projection")

        user = self.users.get(projection.user_id)
        if user is None:
            return False

        stored_version = user.projection.version if user.projection else None
        if projection.version is None and stored_version is not None:
            return False
        if projection.version is not None and stored_version is not None and stored_version > projection.version:
            return False

        user.projection = projection.model_copy(deep=True)
        self.projection_writes += 1
        return True

    async def list_heal_candidates(self, limit: int) -> list[UserAccount]:
        entitled = set()
        if self.subscriptions is not None:
            entitled = {row.user_id for row in self.subscriptions.rows.values() if row.is_entitled}
        return [
            user.model_copy(deep=True)
            for user in self.users.values()
            if user.last_checkout_session_id and user.id not in entitled
        ][:limit]


class FakeWebhookEventLog(IWebhookEventLog):
    def __init__(self):
        self.records: dict[str, WebhookEventRecord] = {}

    async def begin(self, event_id: str, event_type: str, payload: dict[str, Any]) -> ClaimOutcome:
        record = self.records.get(event_id)
        if record is None:
            self.records[event_id] = WebhookEventRecord(
                event_id=event_id,
                event_type=event_type,
                status=WebhookEventStatus.PROCESSING,
                payload=payload,
                received_at=utc_now(),
            )
            return ClaimOutcome.CLAIMED
        if record.status == WebhookEventStatus.FAILED:
            record.status = WebhookEventStatus.PROCESSING
            record.attempts += 1
            return ClaimOutcome.CLAIMED
        if record.status == WebhookEventStatus.PROCESSING:
            return ClaimOutcome.IN_PROGRESS
        return ClaimOutcome.DONE

    async def reopen(self, event_id: str) -> Optional[WebhookEventRecord]:
        record = self.records.get(event_id)
        if record is None or record.status not in (WebhookEventStatus.FAILED, WebhookEventStatus.DEAD_LETTER):
            return None
        record.status = WebhookEventStatus.PROCESSING
        record.attempts += 1
        return record.model_copy(deep=True)

    async def mark_completed(self, event_id: str, outcome: str) -> None:
        self._finish(event_id, WebhookEventStatus.COMPLETED, outcome=outcome, last_error=None)

    async def mark_failed(self, event_id: str, error: str) -> None:
        self._finish(event_id, WebhookEventStatus.FAILED, last_error=error)

    async def mark_dead_letter(self, event_id: str, reason: str) -> None:
        self._finish(event_id, WebhookEventStatus.DEAD_LETTER, outcome="dead_letter", last_error=reason)

    def _finish(self, event_id: str, status: WebhookEventStatus, **values) -> None:
        record = self.records[event_id]
        record.status = status
        record.completed_at = utc_now()
        for key, value in values.items():
            setattr(record, key, value)

    async def get(self, event_id: str) -> Optional[WebhookEventRecord]:
        record = self.records.get(event_id)
        return record.model_copy(deep=True) if record else None

    async def list_by_status(self, status: WebhookEventStatus, limit: int = 50) -> list[WebhookEventRecord]:
        return [r.model_copy(deep=True) for r in self.records.values() if r.status == status][:limit]


# =============================================================================
# Provider
# =============================================================================

class FakeProvider(IProviderClient):
    """Stripe stand-in holding raw objects keyed by id."""

    def __init__(self):
        self.subscriptions: dict[str, dict] = {}
        self.sessions: dict[str, dict] = {}
        self.products: dict[str, dict] = {}
        self.customers: dict[str, str] = {}
        self.calls: list[str] = []
        self.error: Optional[Exception] = None

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.error is not None:
            raise self.error

    async def retrieve_subscription(self, subscription_id: str) -> Optional[dict]:
        self._record("retrieve_subscription")
        return self.subscriptions.get(subscription_id)

    async def retrieve_checkout_session(self, session_id: str) -> Optional[dict]:
        self._record("retrieve_checkout_session")
        session = self.sessions.get(session_id)
        if session is None:
            return None
        expanded = dict(session)
        if isinstance(session.get("subscription"), str) and session["subscription"] in self.subscriptions:
            expanded["subscription"] = self.subscriptions[session["subscription"]]
        return expanded

    async def retrieve_price(self, price_id: str) -> Optional[dict]:
        self._record("retrieve_price")
        return None

    async def retrieve_product(self, product_id: str) -> Optional[dict]:
        self._record("retrieve_product")
        return self.products.get(product_id)

    async def list_customer_subscriptions(self, customer_id: str, limit: int = 10) -> list[dict]:
        self._record("list_customer_subscriptions")
        return [sub for sub in self.subscriptions.values() if sub.get("customer") == customer_id][:limit]

    async def find_customer_id(self, user_id: str) -> Optional[str]:
        self._record("find_customer_id")
        return self.customers.get(user_id)

    async def get_or_create_customer(self, user_id: str, email: Optional[str],
                                     existing_customer_id: Optional[str] = None) -> str:
        self._record("get_or_create_customer")
        if existing_customer_id:
            return existing_customer_id
        customer_id = self.customers.setdefault(user_id, f"cus_{user_id}")
        return customer_id

    async def create_checkout_session(self, customer_id: str, price_id: str, tier: str,
                                      success_url: str, cancel_url: str, user_id: str) -> dict:
        self._record("create_checkout_session")
        session_id = f"cs_test_{len(self.sessions) + 1}"
        session = {
            "id": session_id,
            "url": f"https://checkout.stripe.com/c/pay/{session_id}",
            "mode": "subscription",
            "customer": customer_id,
            "metadata": {"user_id": user_id, "planType": tier},
            "line_items": [{"price": price_id}],
        }
        self.sessions[session_id] = session
        return session

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True,
                                  reason: Optional[str] = None) -> Optional[dict]:
        self._record("cancel_subscription")
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            return None
        subscription["cancellation_details"] = {"reason": "cancellation_requested", "comment": reason}
        if at_period_end:
            subscription["cancel_at_period_end"] = True
        else:
            subscription["status"] = "canceled"
            subscription["canceled_at"] = ts(at(15))
        return subscription


def provider_failure() -> ProviderError:
    return ProviderError("Stripe retrieve_subscription timed out", operation="retrieve_subscription")


# =============================================================================
# Payload Builders
# =============================================================================

def subscription_object(
    sub_id: str = "sub_1",
    customer: str = "cus_1",
    status: str = "active",
    price_id: str = "price_premium_monthly",
    period_start: datetime = None,
    period_end: datetime = None,
    user_id: Optional[str] = "user_1",
    cancel_at_period_end: bool = False,
    nickname: Optional[str] = None,
    product: Any = "prod_1",
    items_period: bool = False,
) -> dict:
    """Raw Stripe subscription object; `items_period` puts the period on the item."""
    period_start = period_start or at(1)
    period_end = period_end or (period_start + timedelta(days=31))
    item = {
        "id": f"si_{sub_id}",
        "price": {
            "id": price_id,
            "nickname": nickname,
            "unit_amount": 999,
            "currency": "usd",
            "recurring": {"interval": "month", "interval_count": 1},
            "metadata": {},
            "product": product,
        },
    }
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": {"user_id": user_id} if user_id else {},
        "items": {"data": [item]},
        "created": ts(period_start),
    }
    if items_period:
        item["current_period_start"] = ts(period_start)
        item["current_period_end"] = ts(period_end)
    else:
        obj["current_period_start"] = ts(period_start)
        obj["current_period_end"] = ts(period_end)
    return obj


def event_envelope(event_id: str, event_type: str, obj: dict, created: datetime,
                   api_version: str = "2024-06-20") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "api_version": api_version,
        "created": ts(created),
        "livemode": False,
        "data": {"object": obj},
    }


def invoice_object(
    invoice_id: str = "in_1",
    sub_id: str = "sub_1",
    customer: str = "cus_1",
    period_start: datetime = None,
    period_end: datetime = None,
    nested: bool = False,
) -> dict:
    """Raw invoice; `nested` uses the parent.subscription_details layout."""
    period_start = period_start or at(1, 2)
    period_end = period_end or (period_start + timedelta(days=28))
    obj = {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "billing_reason": "subscription_cycle",
        "lines": {"data": [{
            "id": f"il_{invoice_id}",
            "period": {"start": ts(period_start), "end": ts(period_end)},
        }]},
    }
    if nested:
        obj["parent"] = {"subscription_details": {"subscription": sub_id}}
    else:
        obj["subscription"] = sub_id
    return obj


def checkout_object(
    session_id: str = "cs_1",
    sub: Any = "sub_1",
    customer: str = "cus_1",
    user_id: Optional[str] = "user_1",
    plan_type: Optional[str] = None,
    mode: str = "subscription",
) -> dict:
    metadata = {}
    if user_id:
        metadata["user_id"] = user_id
    if plan_type:
        metadata["planType"] = plan_type
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": mode,
        "status": "complete",
        "payment_status": "paid",
        "customer": customer,
        "subscription": sub,
        "client_reference_id": user_id,
        "metadata": metadata,
    }


def signed(payload: dict, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> tuple[bytes, str]:
    """Serialize and sign a payload the way Stripe does."""
    body = json.dumps(payload)
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.{body}".encode("utf-8"), hashlib.sha256).hexdigest()
    return body.encode("utf-8"), f"t={timestamp},v1={signature}"


def make_token(user_id: str, secret: str = JWT_SECRET, expires_in: int = 3600, **claims) -> str:
    payload = {
        "sub": user_id,
        "aud": "authenticated",
        "exp": int(time.time()) + expires_in,
        **claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")
