"""
User Account Domain Model

The slice of the user record the billing engine reads and writes.
"""

from datetime import datetime
from typing import Optional

from app.domain.subscription import DomainModel, UserProjection


class UserAccount(DomainModel):
    """User row as seen by billing: identity, provider links and projection."""
    id: str
    email: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    last_checkout_session_id: Optional[str] = None
    projection: Optional[UserProjection] = None
    created_at: Optional[datetime] = None
