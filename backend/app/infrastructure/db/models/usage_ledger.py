"""
Free-Tier Usage Ledger Model

Calendar-month counters for users without an entitled subscription.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UTCDateTime


class UsageLedgerModel(TimestampMixin, table=True):
    """One row per user; period_start marks the month the counters belong to."""

    __tablename__ = "usage_ledgers"

    user_id: str = Field(primary_key=True, max_length=64)
    period_start: datetime = Field(sa_type=UTCDateTime(), nullable=False)
    images_generated: int = Field(default=0)
    models_generated: int = Field(default=0)
    storage_used: int = Field(default=0, sa_type=BigInteger)
    last_reset: Optional[datetime] = Field(default=None, sa_type=UTCDateTime())
