"""
Unit tests for the Stripe provider client.

The SDK is patched; these tests cover error mapping and the shape of
what the client returns.
"""

import time
from unittest.mock import MagicMock, patch

import pytest
import stripe

from app.infrastructure.exceptions import ConfigurationError, ProviderError
from app.infrastructure.payments.stripe_service import StripeService


@pytest.fixture
def service() -> StripeService:
    return StripeService(api_key="sk_test_123", timeout_seconds=0.5)


@pytest.mark.asyncio
class TestStripeService:

    async def test_requires_api_key(self, test_settings):
        test_settings.stripe_secret_key = None
        with patch("app.infrastructure.payments.stripe_service.get_settings", return_value=test_settings):
            service = StripeService()

        with pytest.raises(ConfigurationError):
            await service.retrieve_subscription("sub_1")

    async def test_retrieve_subscription_expands_products(self, service):
        with patch.object(stripe.Subscription, "retrieve", return_value={"id": "sub_1", "status": "active"}) as retrieve:
            result = await service.retrieve_subscription("sub_1")

        assert result == {"id": "sub_1", "status": "active"}
        retrieve.assert_called_once_with("sub_1", expand=["items.data.price.product"])

    async def test_missing_object_returns_none(self, service):
        error = stripe.InvalidRequestError("No such subscription: 'sub_x'", "id", code="resource_missing")
        with patch.object(stripe.Subscription, "retrieve", side_effect=error):
            assert await service.retrieve_subscription("sub_x") is None

    async def test_rejected_request_raises(self, service):
        error = stripe.InvalidRequestError("Invalid customer", "customer", code="parameter_invalid")
        with patch.object(stripe.Subscription, "list", side_effect=error):
            with pytest.raises(ProviderError):
                await service.list_customer_subscriptions("cus_1")

    async def test_api_error_raises(self, service):
        with patch.object(stripe.Product, "retrieve", side_effect=stripe.APIConnectionError("connection reset")):
            with pytest.raises(ProviderError) as exc_info:
                await service.retrieve_product("prod_1")
        assert exc_info.value.details["operation"] == "retrieve_product"

    async def test_timeout_raises(self):
        service = StripeService(api_key="sk_test_123", timeout_seconds=0.05)
        with patch.object(stripe.Product, "retrieve", side_effect=lambda *a, **kw: time.sleep(0.3)):
            with pytest.raises(ProviderError) as exc_info:
                await service.retrieve_product("prod_1")
        assert "timed out" in exc_info.value.message

    async def test_find_customer_by_metadata(self, service):
        with patch.object(stripe.Customer, "search", return_value={"data": [{"id": "cus_9"}]}) as search:
            assert await service.find_customer_id("user_1") == "cus_9"
        assert search.call_args.kwargs["query"] == "metadata['user_id']:'user_1'"

    async def test_existing_customer_reused(self, service):
        create = MagicMock()
        with patch.object(stripe.Customer, "retrieve", return_value={"id": "cus_1"}), \
             patch.object(stripe.Customer, "create", create):
            assert await service.get_or_create_customer("user_1", "a@example.com", "cus_1") == "cus_1"
        create.assert_not_called()

    async def test_deleted_customer_replaced(self, service):
        with patch.object(stripe.Customer, "retrieve", return_value={"id": "cus_1", "deleted": True}), \
             patch.object(stripe.Customer, "create", return_value={"id": "cus_2"}) as create:
            assert await service.get_or_create_customer("user_1", "a@example.com", "cus_1") == "cus_2"
        assert create.call_args.kwargs["metadata"] == {"user_id": "user_1"}

    async def test_checkout_session_carries_owner_metadata(self, service):
        session = {"id": "cs_1", "url": "https://checkout.stripe.com/c/pay/cs_1"}
        with patch.object(stripe.checkout.Session, "create", return_value=session) as create:
            result = await service.create_checkout_session(
                customer_id="cus_1",
                price_id="price_pro_monthly",
                tier="pro",
                success_url="https://app.example.com/success",
                cancel_url="https://app.example.com/cancel",
                user_id="user_1",
            )

        assert result == session
        kwargs = create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["subscription_data"]["metadata"] == {"user_id": "user_1", "planType": "pro"}
        assert kwargs["success_url"].endswith("?session_id={CHECKOUT_SESSION_ID}")

    async def test_cancel_at_period_end_modifies(self, service):
        updated = {"id": "sub_1", "status": "active", "cancel_at_period_end": True}
        with patch.object(stripe.Subscription, "modify", return_value=updated) as modify, \
             patch.object(stripe.Subscription, "cancel") as cancel:
            result = await service.cancel_subscription("sub_1", at_period_end=True, reason="moving")

        assert result == updated
        cancel.assert_not_called()
        assert modify.call_args.args == ("sub_1",)
        assert modify.call_args.kwargs["cancel_at_period_end"] is True
        assert modify.call_args.kwargs["cancellation_details"] == {"comment": "moving"}

    async def test_cancel_immediately(self, service):
        with patch.object(stripe.Subscription, "cancel", return_value={"id": "sub_1", "status": "canceled"}) as cancel:
            result = await service.cancel_subscription("sub_1", at_period_end=False)

        assert result["status"] == "canceled"
        assert "cancellation_details" not in cancel.call_args.kwargs

    async def test_cancel_missing_subscription(self, service):
        error = stripe.InvalidRequestError("No such subscription: 'sub_x'", "id", code="resource_missing")
        with patch.object(stripe.Subscription, "cancel", side_effect=error):
            assert await service.cancel_subscription("sub_x", at_period_end=False) is None
