from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

ACTIVE = "active"
CANCELLED = "cancelled"
EXPIRED = "expired"
STATUSES = (ACTIVE, CANCELLED, EXPIRED)


class SubscriptionPeriod(Document):
    """Current billing period; gates uploads while current_period_end is in the future."""
    user_id: Indexed(str, unique=True)
    current_period_end: datetime
    status: str = ACTIVE  # active, cancelled, expired
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "subscription_periods"
