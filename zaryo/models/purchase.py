from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field

PENDING = "pending"
COMPLETED = "completed"
REFUNDED = "refunded"


class Purchase(Document):
    """Binds a content sale to the ledger transaction that paid for it."""
    content_id: PydanticObjectId
    seller_id: str
    buyer_id: str
    tokens_paid: int
    status: str = PENDING  # pending, completed, refunded
    transaction_id: str | None = None
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    class Settings:
        name = "purchases"
        indexes = [
            [("buyer_id", 1), ("created_at", -1)],
            [("seller_id", 1), ("created_at", -1)],
            [("content_id", 1)],
            [("status", 1), ("created_at", 1)],
        ]
