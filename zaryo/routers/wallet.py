from fastapi import APIRouter, Depends, Query

from zaryo.core.identity import Identity
from zaryo.deps import get_identity
from zaryo.models.ledger_transaction import LedgerTransaction
from zaryo.services import ledger_store

router = APIRouter()


def transaction_out(tx: LedgerTransaction) -> dict:
    return {
        "id": str(tx.id),
        "from_account": tx.from_account,
        "to_account": tx.to_account,
        "amount": tx.amount,
        "kind": tx.kind,
        "status": tx.status,
        "reference": tx.reference,
        "notes": tx.notes,
        "failure_reason": tx.failure_reason,
        "created_at": tx.created_at.isoformat(),
        "resolved_at": tx.resolved_at.isoformat() if tx.resolved_at else None,
    }


@router.get("")
async def wallet(identity: Identity = Depends(get_identity)):
    """Balance with earned/spent totals derived from the transaction log."""
    await ledger_store.ensure_account(identity.user_id)
    return await ledger_store.wallet_summary(identity.user_id)


@router.get("/transactions")
async def wallet_transactions(
    identity: Identity = Depends(get_identity),
    kind: str | None = None,
    status: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Transactions in or out of the caller's account (newest first)."""
    txs = await ledger_store.list_transactions(identity.user_id, limit=limit, offset=offset, kind=kind, status=status)
    return {"transactions": [transaction_out(t) for t in txs], "limit": limit, "offset": offset}
