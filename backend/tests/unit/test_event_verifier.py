"""
Unit tests for webhook authentication and decoding.

Signatures are produced with the same scheme Stripe uses, so the real
stripe.WebhookSignature check runs.
"""

import hashlib
import hmac
import time

import pytest

from app.domain.billing_events import SubscriptionChangedEvent
from app.infrastructure.exceptions import ConfigurationError, VerificationError
from app.infrastructure.payments.event_verifier import EventVerifier

from fakes import WEBHOOK_SECRET, at, event_envelope, signed, subscription_object


@pytest.fixture
def verifier() -> EventVerifier:
    return EventVerifier(WEBHOOK_SECRET)


@pytest.fixture
def envelope() -> dict:
    return event_envelope("evt_1", "customer.subscription.updated", subscription_object(), at(1))


def sign_text(body: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class TestVerification:

    def test_valid_signature(self, verifier, envelope):
        body, header = signed(envelope)
        verified = verifier.verify(body, header)

        assert isinstance(verified.event, SubscriptionChangedEvent)
        assert verified.event.event_id == "evt_1"
        assert verified.payload["id"] == "evt_1"

    def test_missing_signature(self, verifier, envelope):
        body, _ = signed(envelope)
        with pytest.raises(VerificationError) as exc_info:
            verifier.verify(body, None)
        assert exc_info.value.reason == "missing_signature"

    def test_wrong_secret(self, verifier, envelope):
        body, header = signed(envelope, secret="whsec_other")
        with pytest.raises(VerificationError) as exc_info:
            verifier.verify(body, header)
        assert exc_info.value.reason == "invalid_signature"

    def test_tampered_body(self, verifier, envelope):
        body, header = signed(envelope)
        tampered = body.replace(b'"active"', b'"canceled"')
        with pytest.raises(VerificationError) as exc_info:
            verifier.verify(tampered, header)
        assert exc_info.value.reason == "invalid_signature"

    def test_expired_timestamp(self, verifier, envelope):
        body, header = signed(envelope, timestamp=int(time.time()) - 3600)
        with pytest.raises(VerificationError) as exc_info:
            verifier.verify(body, header)
        assert exc_info.value.reason == "invalid_signature"

    def test_no_secret_configured(self, envelope):
        body, header = signed(envelope)
        with pytest.raises(ConfigurationError):
            EventVerifier(None).verify(body, header)


class TestPayloadChecks:

    def test_signed_but_not_json(self, verifier):
        body = "not json"
        with pytest.raises(VerificationError) as exc_info:
            verifier.verify(body.encode(), sign_text(body))
        assert exc_info.value.reason == "invalid_payload"

    def test_signed_but_malformed_envelope(self, verifier):
        body, header = signed({"id": "evt_2", "type": "invoice.paid"})
        with pytest.raises(VerificationError) as exc_info:
            verifier.verify(body, header)
        assert exc_info.value.reason == "malformed_event"

    def test_non_numeric_timestamp_is_malformed(self, verifier):
        envelope = event_envelope("evt_3", "customer.subscription.updated", subscription_object(), at(1))
        envelope["data"]["object"]["current_period_end"] = "next month"
        body, header = signed(envelope)

        with pytest.raises(VerificationError) as exc_info:
            verifier.verify(body, header)
        assert exc_info.value.reason == "malformed_event"

    def test_unsupported_api_version(self, envelope):
        verifier = EventVerifier(WEBHOOK_SECRET, supported_api_versions=["2025-03-31.basil"])
        body, header = signed(envelope)
        with pytest.raises(VerificationError) as exc_info:
            verifier.verify(body, header)
        assert exc_info.value.reason == "unsupported_version"

    def test_supported_api_version(self):
        verifier = EventVerifier(WEBHOOK_SECRET, supported_api_versions=["2025-03-31.basil"])
        envelope = event_envelope(
            "evt_3",
            "customer.subscription.updated",
            subscription_object(items_period=True),
            at(1),
            api_version="2025-03-31.basil",
        )
        body, header = signed(envelope)
        verified = verifier.verify(body, header)
        assert verified.event.subscription.current_period_start == at(1)
