"""
Payments Infrastructure Module

Stripe provider client and webhook verification.
"""

from app.infrastructure.payments.event_verifier import EventVerifier, VerifiedEvent
from app.infrastructure.payments.stripe_service import StripeService

__all__ = ["EventVerifier", "VerifiedEvent", "StripeService"]
