"""
User Database Model

The user row with its provider links and the denormalized plan projection.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UTCDateTime


class UserModel(TimestampMixin, table=True):
    """
    Users table.

    Projection columns (subscription_*) are written only by the projection
    updater and are guarded by projection_version.
    """

    __tablename__ = "users"

    id: str = Field(primary_key=True, max_length=64)
    email: Optional[str] = Field(default=None, max_length=320)

    stripe_customer_id: Optional[str] = Field(default=None, unique=True, index=True, max_length=255)
    last_checkout_session_id: Optional[str] = Field(default=None, max_length=255)

    # Plan projection
    subscription_tier: str = Field(default="free", max_length=32)
    subscription_status: Optional[str] = Field(default=None, max_length=32)
    subscription_expires_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime())
    subscription_features: list = Field(default_factory=list, sa_type=JSON)
    subscription_remote_id: Optional[str] = Field(default=None, max_length=255)
    projection_version: Optional[datetime] = Field(default=None, sa_type=UTCDateTime())
