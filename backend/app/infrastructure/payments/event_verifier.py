"""
Webhook Event Verifier

Authenticates an inbound provider webhook and decodes it once into a
typed BillingEvent. Stateless apart from the signing secret.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import stripe

from app.domain.billing_events import BillingEvent, EventDecodeError, decode_event
from app.infrastructure.exceptions import ConfigurationError, VerificationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedEvent:
    """A decoded event plus the raw envelope it came from."""
    event: BillingEvent
    payload: dict[str, Any]


class EventVerifier:
    """Checks the Stripe-Signature header, then parses and decodes the body."""

    def __init__(
        self,
        webhook_secret: Optional[str],
        tolerance_seconds: int = 300,
        supported_api_versions: Iterable[str] = (),
    ):
        self._secret = webhook_secret
        self._tolerance = tolerance_seconds
        self._supported_versions = frozenset(supported_api_versions)

    def verify(self, payload: bytes, signature: Optional[str]) -> VerifiedEvent:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            VerifiedEvent if valid

        Raises:
            VerificationError: missing/invalid signature, unparseable payload,
                malformed envelope or unsupported api_version
            ConfigurationError: no webhook secret configured
        """
        if not self._secret:
            raise ConfigurationError(
                "Webhook secret is not configured",
                missing_keys=["STRIPE_WEBHOOK_SECRET"],
            )

        if not signature:
            raise VerificationError("Missing Stripe signature", reason="missing_signature")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise VerificationError("Invalid payload encoding", reason="invalid_payload", original_error=e) from e

        try:
            stripe.WebhookSignature.verify_header(body, signature, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise VerificationError("Invalid signature", reason="invalid_signature", original_error=e) from e

        try:
            raw = json.loads(body)
        except ValueError as e:
            raise VerificationError("Invalid payload", reason="invalid_payload", original_error=e) from e

        api_version = raw.get("api_version") if isinstance(raw, dict) else None
        if self._supported_versions and api_version not in self._supported_versions:
            logger.warning(f"Rejected event with unsupported api_version {api_version}")
            raise VerificationError(
                f"Unsupported event schema version: {api_version}",
                reason="unsupported_version",
            )

        try:
            event = decode_event(raw)
        except EventDecodeError as e:
            logger.warning(f"Malformed webhook event: {e}")
            raise VerificationError(f"Malformed event: {e}", reason="malformed_event", original_error=e) from e

        return VerifiedEvent(event=event, payload=raw)
