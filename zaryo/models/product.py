from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field

ACTIVE = "active"
OUT_OF_STOCK = "out_of_stock"
ARCHIVED = "archived"

UNLIMITED_STOCK = -1

PURCHASE_PENDING = "pending"
PURCHASE_COMPLETED = "completed"
PURCHASE_REFUNDED = "refunded"


class Product(Document):
    """Ecosystem product listed by an admin and paid for in tokens."""
    seller_id: str
    title: str
    description: str = ""
    category: str | None = None
    price_tokens: int
    stock_quantity: int = UNLIMITED_STOCK
    status: str = ACTIVE  # active, out_of_stock, archived
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "products"
        indexes = [[("status", 1), ("created_at", -1)]]


class ProductPurchase(Document):
    product_id: PydanticObjectId
    buyer_id: str
    seller_id: str
    quantity: int = 1
    tokens_paid: int
    status: str = PURCHASE_PENDING  # pending, completed, refunded
    transaction_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "product_purchases"
        indexes = [
            [("buyer_id", 1), ("created_at", -1)],
            [("created_at", -1)],
        ]
