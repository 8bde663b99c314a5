from datetime import datetime

from beanie import Document
from pydantic import Field

PENDING = "pending"
APPROVED = "approved"
PROCESSING = "processing"
COMPLETED = "completed"
REJECTED = "rejected"


class RedemptionRequest(Document):
    """User request to cash out tokens; reviewed and completed by an admin."""
    user_id: str
    name: str = ""
    token_count: int
    payment_method: str
    account_username: str
    phone_number: str
    status: str = PENDING  # pending, approved, processing, completed, rejected
    notes: str | None = None
    transaction_id: str | None = None
    completed_by: str | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "redemption_requests"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("status", 1), ("created_at", -1)],
        ]
