from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from zaryo.core.identity import Identity
from zaryo.deps import require_admin
from zaryo.routers.wallet import transaction_out
from zaryo.services import ledger_store, recovery, settlement

router = APIRouter()


class SetBalanceRequest(BaseModel):
    user_id: str = Field(min_length=1)
    new_balance: int = Field(ge=0)
    notes: str | None = None


@router.post("/balance")
async def admin_set_balance(body: SetBalanceRequest, admin: Identity = Depends(require_admin)):
    """Admin: set a user's balance; recorded as an issuance or redemption transaction."""
    await settlement.adjust_balance(admin, body.user_id, body.new_balance, body.notes)
    return {"success": True}


@router.get("/accounts/{user_id}")
async def admin_account(user_id: str, admin: Identity = Depends(require_admin)):
    """Admin: wallet summary of any user."""
    await ledger_store.get_balance(user_id)
    return await ledger_store.wallet_summary(user_id)


@router.get("/accounts/{user_id}/transactions")
async def admin_account_transactions(
    user_id: str,
    admin: Identity = Depends(require_admin),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    txs = await ledger_store.list_transactions(user_id, limit=limit, offset=offset)
    return {"transactions": [transaction_out(t) for t in txs], "limit": limit, "offset": offset}


@router.get("/accounts/{user_id}/reconcile")
async def admin_reconcile(user_id: str, admin: Identity = Depends(require_admin)):
    """Admin: stored balance vs. balance rebuilt from completed transactions."""
    return await ledger_store.reconcile_account(user_id)


@router.post("/settlements/recover")
async def admin_recover(
    older_than_seconds: int | None = Query(None, ge=0),
    admin: Identity = Depends(require_admin),
):
    """Admin: resolve stale in-flight settlements now instead of waiting for the worker."""
    return await recovery.recover_stale_settlements(older_than_seconds)
