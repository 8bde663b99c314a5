from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field

ACTIVE = "active"
SOLD = "sold"
ARCHIVED = "archived"


class ContentItem(Document):
    """Sellable video/asset. Price and ownership freeze once sold."""
    owner_id: str
    title: str = ""
    description: str = ""
    price_tokens: int = 0
    status: str = ACTIVE  # active, sold, archived
    pending_purchase_id: PydanticObjectId | None = None  # reservation held by an in-flight purchase
    sold_to: str | None = None
    sold_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "content_items"
        indexes = [
            [("owner_id", 1), ("created_at", -1)],
            [("status", 1), ("created_at", -1)],
        ]
