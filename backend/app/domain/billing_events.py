"""
Billing Event Schema

Provider payloads are decoded once, at the boundary, into typed models.
Fields whose location moved between Stripe API versions are read with an
ordered list of extractors; the first one that yields a value wins.

Event taxonomy (tagged on `kind`):
- checkout_completed: checkout.session.completed / async_payment_succeeded
- subscription_changed: customer.subscription.created|updated|deleted|paused|resumed
- invoice: invoice.paid, invoice.payment_succeeded, invoice.payment_failed
- ignored: anything else (acknowledged, never applied)
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Iterable, Literal, Optional, Union

from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

from app.domain.subscription import DomainModel, SubscriptionStatus


Extractor = Callable[[dict], Any]


class EventDecodeError(ValueError):
    """Raised when a provider payload does not have the expected shape."""
    pass


# =============================================================================
# Extraction Helpers
# =============================================================================

def first_match(source: dict, extractors: Iterable[Extractor]) -> Any:
    """Return the first non-None value produced by the extractors."""
    for extract in extractors:
        try:
            value = extract(source)
        except (AttributeError, IndexError, KeyError, TypeError):
            continue
        if value is not None:
            return value
    return None


def as_id(value: Any) -> Optional[str]:
    """Provider references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


def from_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise EventDecodeError(f"Invalid timestamp: {value!r}") from e


def _first_item(subscription: dict) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _first_line(invoice: dict) -> dict:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        if first_match(line, _LINE_SUBSCRIPTION_EXTRACTORS):
            return line
    return lines[0] if lines else {}


def _price(subscription: dict) -> dict:
    return first_match(subscription, (
        lambda sub: _first_item(sub).get("price") or None,
        lambda sub: _first_item(sub).get("plan") or None,
        lambda sub: sub.get("plan") or None,
    )) or {}


# Period bounds live on the subscription in older API versions and on the
# subscription item from 2025-03-31 onwards.
_PERIOD_START_EXTRACTORS: tuple[Extractor, ...] = (
    lambda sub: sub.get("current_period_start"),
    lambda sub: _first_item(sub).get("current_period_start"),
)
_PERIOD_END_EXTRACTORS: tuple[Extractor, ...] = (
    lambda sub: sub.get("current_period_end"),
    lambda sub: _first_item(sub).get("current_period_end"),
)
_USER_ID_EXTRACTORS: tuple[Extractor, ...] = (
    lambda obj: (obj.get("metadata") or {}).get("user_id"),
    lambda obj: (obj.get("metadata") or {}).get("userId"),
    lambda obj: obj.get("client_reference_id"),
)
_LINE_SUBSCRIPTION_EXTRACTORS: tuple[Extractor, ...] = (
    lambda line: as_id(line.get("subscription")),
    lambda line: line["parent"]["subscription_item_details"]["subscription"],
)
# invoice.subscription was moved under parent.subscription_details in 2025-03-31.
_INVOICE_SUBSCRIPTION_EXTRACTORS: tuple[Extractor, ...] = (
    lambda inv: as_id(inv.get("subscription")),
    lambda inv: as_id(inv["parent"]["subscription_details"]["subscription"]),
    lambda inv: first_match(_first_line(inv), _LINE_SUBSCRIPTION_EXTRACTORS),
)


def extract_user_id(obj: dict) -> Optional[str]:
    return first_match(obj, _USER_ID_EXTRACTORS)


# =============================================================================
# Provider Objects
# =============================================================================

class ProviderSubscription(DomainModel):
    """Normalized snapshot of a provider subscription."""
    id: str
    customer_id: Optional[str] = None
    status: SubscriptionStatus
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    price_nickname: Optional[str] = None
    price_amount: Optional[int] = None
    currency: Optional[str] = None
    interval: Optional[str] = None
    interval_count: int = 1
    price_metadata: dict[str, str] = Field(default_factory=dict)
    product_metadata: Optional[dict[str, str]] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created: Optional[datetime] = None

    @property
    def user_id(self) -> Optional[str]:
        return extract_user_id({"metadata": self.metadata})

    @classmethod
    def from_stripe(cls, obj: dict) -> "ProviderSubscription":
        """Build a snapshot from a raw subscription object."""
        if not isinstance(obj, dict) or not obj.get("id") or not obj.get("status"):
            raise EventDecodeError("Subscription object is missing id or status")

        try:
            status = SubscriptionStatus(obj["status"])
        except ValueError as e:
            raise EventDecodeError(f"Unknown subscription status: {obj['status']}") from e

        price = _price(obj)
        recurring = price.get("recurring") or {}
        product = price.get("product")

        return cls(
            id=obj["id"],
            customer_id=as_id(obj.get("customer")),
            status=status,
            price_id=price.get("id"),
            product_id=as_id(product),
            price_nickname=price.get("nickname"),
            price_amount=first_match(price, (
                lambda p: p.get("unit_amount"),
                lambda p: p.get("amount"),
            )),
            currency=price.get("currency"),
            interval=recurring.get("interval") or price.get("interval"),
            interval_count=recurring.get("interval_count") or price.get("interval_count") or 1,
            price_metadata=dict(price.get("metadata") or {}),
            product_metadata=dict(product.get("metadata") or {}) if isinstance(product, dict) else None,
            metadata=dict(obj.get("metadata") or {}),
            current_period_start=from_timestamp(first_match(obj, _PERIOD_START_EXTRACTORS)),
            current_period_end=from_timestamp(first_match(obj, _PERIOD_END_EXTRACTORS)),
            trial_start=from_timestamp(obj.get("trial_start")),
            trial_end=from_timestamp(obj.get("trial_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            canceled_at=from_timestamp(obj.get("canceled_at")),
            cancellation_reason=(obj.get("cancellation_details") or {}).get("reason"),
            created=from_timestamp(obj.get("created")),
        )


class ProviderCheckoutSession(DomainModel):
    """Normalized checkout session."""
    id: str
    mode: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    customer_id: Optional[str] = None
    remote_subscription_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    subscription: Optional[ProviderSubscription] = None

    @property
    def is_subscription(self) -> bool:
        return self.mode == "subscription"

    @classmethod
    def from_stripe(cls, obj: dict) -> "ProviderCheckoutSession":
        if not isinstance(obj, dict) or not obj.get("id"):
            raise EventDecodeError("Checkout session object is missing id")

        raw_subscription = obj.get("subscription")
        expanded = None
        if isinstance(raw_subscription, dict) and raw_subscription.get("status"):
            expanded = ProviderSubscription.from_stripe(raw_subscription)

        return cls(
            id=obj["id"],
            mode=obj.get("mode"),
            status=obj.get("status"),
            payment_status=obj.get("payment_status"),
            customer_id=as_id(obj.get("customer")),
            remote_subscription_id=as_id(raw_subscription),
            user_id=extract_user_id(obj),
            metadata=dict(obj.get("metadata") or {}),
            subscription=expanded,
        )


# =============================================================================
# Events
# =============================================================================

class BillingEventBase(DomainModel):
    event_id: str
    event_type: str
    created: datetime
    api_version: Optional[str] = None
    livemode: bool = False


class CheckoutCompletedEvent(BillingEventBase):
    kind: Literal["checkout_completed"] = "checkout_completed"
    session: ProviderCheckoutSession


class SubscriptionChangedEvent(BillingEventBase):
    kind: Literal["subscription_changed"] = "subscription_changed"
    action: Literal["created", "updated", "deleted", "paused", "resumed"]
    subscription: ProviderSubscription


class InvoiceEvent(BillingEventBase):
    kind: Literal["invoice"] = "invoice"
    outcome: Literal["paid", "failed"]
    invoice_id: str
    remote_subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    billing_reason: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class IgnoredEvent(BillingEventBase):
    kind: Literal["ignored"] = "ignored"


BillingEvent = Annotated[
    Union[CheckoutCompletedEvent, SubscriptionChangedEvent, InvoiceEvent, IgnoredEvent],
    Field(discriminator="kind"),
]


_SUBSCRIPTION_ACTIONS = {
    "customer.subscription.created": "created",
    "customer.subscription.updated": "updated",
    "customer.subscription.deleted": "deleted",
    "customer.subscription.paused": "paused",
    "customer.subscription.resumed": "resumed",
}
_INVOICE_OUTCOMES = {
    "invoice.paid": "paid",
    "invoice.payment_succeeded": "paid",
    "invoice.payment_failed": "failed",
}
_CHECKOUT_TYPES = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}


def decode_event(raw: dict):
    """
    Decode a verified provider event envelope into a typed BillingEvent.

    Raises:
        EventDecodeError: if the envelope or its data object is malformed
    """
    try:
        return _decode(raw)
    except PydanticValidationError as e:
        raise EventDecodeError(f"Event fields have unexpected types ({e.error_count()} error(s))") from e


def _decode(raw: dict):
    if not isinstance(raw, dict):
        raise EventDecodeError("Event payload must be a JSON object")

    event_id = raw.get("id")
    event_type = raw.get("type")
    obj = (raw.get("data") or {}).get("object")
    if not event_id or not event_type or not isinstance(obj, dict):
        raise EventDecodeError("Event envelope is missing id, type or data.object")

    envelope = {
        "event_id": event_id,
        "event_type": event_type,
        "created": from_timestamp(raw.get("created")) or datetime.now(timezone.utc),
        "api_version": raw.get("api_version"),
        "livemode": bool(raw.get("livemode")),
    }

    if event_type in _SUBSCRIPTION_ACTIONS:
        return SubscriptionChangedEvent(
            **envelope,
            action=_SUBSCRIPTION_ACTIONS[event_type],
            subscription=ProviderSubscription.from_stripe(obj),
        )

    if event_type in _INVOICE_OUTCOMES:
        if not obj.get("id"):
            raise EventDecodeError("Invoice object is missing id")
        line_period = _first_line(obj).get("period") or {}
        return InvoiceEvent(
            **envelope,
            outcome=_INVOICE_OUTCOMES[event_type],
            invoice_id=obj["id"],
            remote_subscription_id=first_match(obj, _INVOICE_SUBSCRIPTION_EXTRACTORS),
            customer_id=as_id(obj.get("customer")),
            billing_reason=obj.get("billing_reason"),
            period_start=from_timestamp(line_period.get("start")),
            period_end=from_timestamp(line_period.get("end")),
        )

    if event_type in _CHECKOUT_TYPES:
        return CheckoutCompletedEvent(
            **envelope,
            session=ProviderCheckoutSession.from_stripe(obj),
        )

    return IgnoredEvent(**envelope)
