from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class Account(Document):
    """Token balance per user identity. Mutated only by the ledger store's commit primitive."""
    user_id: Indexed(str, unique=True)
    balance: int = 0
    pending_txns: list[str] = Field(default_factory=list)  # transaction ids whose leg is applied but not released
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "accounts"
        indexes = [[("pending_txns", 1)]]
