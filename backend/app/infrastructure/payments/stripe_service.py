"""
Stripe Payment Service

Clean Architecture infrastructure service for Stripe.
Implements the provider client used by the event router, the reconciler
and the checkout endpoint.

Every call runs the synchronous SDK off the event loop and under a
timeout. SDK-level retries are disabled: retrying belongs to whoever
drives the whole pipeline (provider redelivery, operator re-run).
"""

import asyncio
import json
import logging
from typing import Any, Callable, Optional

import stripe
from stripe import InvalidRequestError, StripeError, StripeObject

from app.config.settings import get_settings
from app.domain.interfaces import IProviderClient
from app.infrastructure.exceptions import ConfigurationError, ProviderError


logger = logging.getLogger(__name__)


def to_plain(obj: Any) -> Optional[dict]:
    """Convert an SDK object into plain nested dicts."""
    if obj is None:
        return None
    if isinstance(obj, StripeObject):
        return json.loads(str(obj))
    return dict(obj)


class StripeService(IProviderClient):
    """
    Stripe payment processing service.

    All methods are stateless; lookups return None for missing objects.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """Initialize Stripe with API key from settings."""
        settings = get_settings()
        self._api_key = api_key or settings.stripe_secret_key
        self._timeout = timeout_seconds or settings.stripe_request_timeout_seconds

        if self._api_key:
            stripe.api_key = self._api_key
        stripe.max_network_retries = 0

    async def _call(
        self,
        operation: str,
        fn: Callable[..., Any],
        *args,
        missing_ok: bool = False,
        **kwargs,
    ) -> Any:
        """Run an SDK call in a worker thread with a deadline."""
        if not self._api_key:
            raise ConfigurationError(
                "Stripe is not configured",
                missing_keys=["STRIPE_SECRET_KEY"],
            )

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe {operation} timed out after {self._timeout}s")
            raise ProviderError(f"Stripe {operation} timed out", operation=operation, original_error=e) from e
        except InvalidRequestError as e:
            if missing_ok and e.code == "resource_missing":
                logger.warning(f"Stripe {operation}: {e.user_message or e}")
                return None
            logger.error(f"Stripe {operation} rejected: {e}")
            raise ProviderError(f"Stripe {operation} failed: {e.user_message or e}", operation=operation, original_error=e) from e
        except StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise ProviderError(f"Stripe {operation} failed: {e.user_message or e}", operation=operation, original_error=e) from e

    # =========================================================================
    # Subscription Queries
    # =========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> Optional[dict]:
        """
        Retrieve a subscription by ID with its price products expanded.

        Args:
            subscription_id: Stripe subscription ID

        Returns:
            Subscription as a dict, or None if not found
        """
        subscription = await self._call(
            "retrieve_subscription",
            stripe.Subscription.retrieve,
            subscription_id,
            expand=["items.data.price.product"],
            missing_ok=True,
        )
        return to_plain(subscription)

    async def retrieve_checkout_session(self, session_id: str) -> Optional[dict]:
        """Retrieve a checkout session with subscription and customer expanded."""
        session = await self._call(
            "retrieve_checkout_session",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["subscription", "customer"],
            missing_ok=True,
        )
        return to_plain(session)

    async def retrieve_price(self, price_id: str) -> Optional[dict]:
        price = await self._call(
            "retrieve_price",
            stripe.Price.retrieve,
            price_id,
            expand=["product"],
            missing_ok=True,
        )
        return to_plain(price)

    async def retrieve_product(self, product_id: str) -> Optional[dict]:
        product = await self._call(
            "retrieve_product",
            stripe.Product.retrieve,
            product_id,
            missing_ok=True,
        )
        return to_plain(product)

    async def list_customer_subscriptions(self, customer_id: str, limit: int = 10) -> list[dict]:
        """
        List a customer's subscriptions in every status.

        Args:
            customer_id: Stripe customer ID
            limit: Maximum number of subscriptions to return
        """
        result = await self._call(
            "list_customer_subscriptions",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=limit,
        )
        return [to_plain(item) for item in (result.get("data") or [])]

    async def cancel_subscription(
        self,
        subscription_id: str,
        at_period_end: bool = True,
        reason: Optional[str] = None,
    ) -> Optional[dict]:
        """
        Cancel a subscription.

        Args:
            subscription_id: Stripe subscription ID
            at_period_end: If True, cancel at end of billing period
            reason: Free-text reason stored on the subscription

        Returns:
            Updated subscription as a dict, or None if not found
        """
        params: dict[str, Any] = {"expand": ["items.data.price.product"]}
        if reason:
            params["cancellation_details"] = {"comment": reason}

        if at_period_end:
            subscription = await self._call(
                "cancel_subscription",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
                missing_ok=True,
                **params,
            )
        else:
            subscription = await self._call(
                "cancel_subscription",
                stripe.Subscription.cancel,
                subscription_id,
                missing_ok=True,
                **params,
            )

        if subscription is not None:
            logger.info(f"Cancelled subscription {subscription_id}, at_period_end={at_period_end}")
        return to_plain(subscription)

    # =========================================================================
    # Customer Management
    # =========================================================================

    async def find_customer_id(self, user_id: str) -> Optional[str]:
        """Find the customer created for a user (by metadata)."""
        result = await self._call(
            "find_customer",
            stripe.Customer.search,
            query=f"metadata['user_id']:'{user_id}'",
            limit=1,
        )
        data = result.get("data") or []
        return data[0]["id"] if data else None

    async def get_or_create_customer(
        self,
        user_id: str,
        email: Optional[str],
        existing_customer_id: Optional[str] = None,
    ) -> str:
        """
        Get existing customer or create new one.

        Args:
            user_id: Internal user ID (stored in metadata)
            email: Customer email for receipts
            existing_customer_id: Optional existing Stripe customer ID

        Returns:
            Stripe customer ID
        """
        if existing_customer_id:
            customer = await self._call(
                "retrieve_customer",
                stripe.Customer.retrieve,
                existing_customer_id,
                missing_ok=True,
            )
            if customer is not None and not customer.get("deleted"):
                return customer["id"]
            logger.warning(f"Customer {existing_customer_id} not found, creating new")

        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            metadata={"user_id": user_id},
        )
        logger.info(f"Created Stripe customer {customer['id']} for user {user_id}")
        return customer["id"]

    # =========================================================================
    # Checkout Session (Subscription Flow)
    # =========================================================================

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        tier: str,
        success_url: str,
        cancel_url: str,
        user_id: str,
    ) -> dict:
        """
        Create a Stripe Checkout Session for a subscription.

        The user id and plan tier travel in both the session and the
        subscription metadata so either webhook can resolve the owner.
        """
        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url,
            allow_promotion_codes=True,
            client_reference_id=user_id,
            metadata={"user_id": user_id, "planType": tier},
            subscription_data={"metadata": {"user_id": user_id, "planType": tier}},
        )

        logger.info(f"Created checkout session {session['id']} for user {user_id}, tier={tier}")
        return to_plain(session)
