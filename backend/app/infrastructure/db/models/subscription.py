"""
Subscription Database Model

SQLModel table for the canonical subscription record. Plan, billing and
usage are flattened into columns; features and limits are JSON.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, BigInteger
from sqlmodel import Field

from app.infrastructure.db.models.base import IDMixin, TimestampMixin, UTCDateTime


class SubscriptionModel(IDMixin, TimestampMixin, table=True):
    """
    Subscription table, one row per provider subscription.

    Maps to the 'subscriptions' table. Rows are never deleted.
    """

    __tablename__ = "subscriptions"

    user_id: str = Field(index=True, nullable=False, max_length=64)

    # Stripe IDs
    remote_subscription_id: str = Field(unique=True, index=True, nullable=False, max_length=255)
    remote_customer_id: Optional[str] = Field(default=None, index=True, max_length=255)
    remote_price_id: Optional[str] = Field(default=None, max_length=255)
    remote_product_id: Optional[str] = Field(default=None, max_length=255)

    status: str = Field(default="incomplete", index=True, max_length=32)

    # Plan
    plan_name: str = Field(max_length=64)
    plan_tier: str = Field(default="premium", max_length=32)
    price_amount: Optional[int] = Field(default=None)
    price_currency: Optional[str] = Field(default=None, max_length=8)
    price_interval: Optional[str] = Field(default=None, max_length=16)
    price_interval_count: int = Field(default=1)
    plan_features: list = Field(default_factory=list, sa_type=JSON)
    plan_limits: dict = Field(default_factory=dict, sa_type=JSON)

    # Billing
    current_period_start: Optional[datetime] = Field(default=None, sa_type=UTCDateTime())
    current_period_end: Optional[datetime] = Field(default=None, sa_type=UTCDateTime())
    trial_start: Optional[datetime] = Field(default=None, sa_type=UTCDateTime())
    trial_end: Optional[datetime] = Field(default=None, sa_type=UTCDateTime())
    cancel_at_period_end: bool = Field(default=False)
    canceled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime())
    cancellation_reason: Optional[str] = Field(default=None, max_length=255)

    # Usage tracking (current period)
    images_generated: int = Field(default=0)
    models_generated: int = Field(default=0)
    storage_used: int = Field(default=0, sa_type=BigInteger)
    usage_last_reset: Optional[datetime] = Field(default=None, sa_type=UTCDateTime())

    # Ordering / concurrency
    version: Optional[datetime] = Field(default=None, sa_type=UTCDateTime())
    revision: int = Field(default=0, nullable=False)
