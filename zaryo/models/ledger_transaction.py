from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

PURCHASE = "purchase"
REDEMPTION = "redemption"
ISSUANCE = "issuance"
ECOSYSTEM_PURCHASE = "ecosystem_purchase"
KINDS = (PURCHASE, REDEMPTION, ISSUANCE, ECOSYSTEM_PURCHASE)

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"


class LedgerTransaction(Document):
    """Append-only record of one balance-affecting event."""
    from_account: str | None = None  # absent for issuance
    to_account: str | None = None  # absent for redemption
    amount: int
    kind: str  # purchase, redemption, issuance, ecosystem_purchase
    status: str = PENDING  # pending -> completed | failed, then frozen
    reference: str | None = None  # purchase id, redemption request id, payment id
    idempotency_key: Indexed(str, unique=True)
    notes: str | None = None
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    resolved_at: datetime | None = None

    class Settings:
        name = "transactions"
        indexes = [
            [("from_account", 1), ("created_at", -1)],
            [("to_account", 1), ("created_at", -1)],
            [("status", 1), ("created_at", 1)],
            [("kind", 1), ("reference", 1)],
        ]
