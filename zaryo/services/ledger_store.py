"""Ledger store: account balances and the append-only transaction log.

Balances only move through `commit_transaction`, which applies a pending
transaction's legs with single-document conditional updates and then flips the
record to completed. Each leg pushes the transaction id onto the account's
`pending_txns` in the same write, so a leg is never applied twice and any leg
left behind by a failed or interrupted commit can be found and reverted.
"""

from datetime import datetime

from beanie import PydanticObjectId
from beanie.operators import Or
from pymongo.errors import DuplicateKeyError

from zaryo.core.exceptions import InsufficientFundsError, NotFoundError, SettlementFailedError
from zaryo.core.logging import get_logger
from zaryo.models.account import Account
from zaryo.models.ledger_transaction import COMPLETED, FAILED, PENDING, LedgerTransaction

log = get_logger(__name__)


async def get_account(user_id: str) -> Account | None:
    return await Account.find_one(Account.user_id == user_id)


async def get_balance(user_id: str) -> int:
    """Return the stored balance; NotFoundError if the account was never created."""
    account = await get_account(user_id)
    if not account:
        raise NotFoundError("Account not found")
    return account.balance


async def get_balance_or_zero(user_id: str) -> int:
    account = await get_account(user_id)
    return account.balance if account else 0


async def ensure_account(user_id: str) -> Account:
    """Create the account with a zero balance on first use."""
    now = datetime.utcnow()
    try:
        await Account.get_motor_collection().update_one(
            {"user_id": user_id},
            {
                "$setOnInsert": {
                    "balance": 0,
                    "pending_txns": [],
                    "created_at": now,
                    "updated_at": now,
                }
            },
            upsert=True,
        )
    except DuplicateKeyError:
        pass  # concurrent first use; the other upsert created it
    account = await get_account(user_id)
    if account is None:
        raise SettlementFailedError("Account could not be created")
    return account


async def append_transaction(tx: LedgerTransaction) -> str:
    """Insert a pending record. DuplicateKeyError if its idempotency key is already live."""
    tx.status = PENDING
    await tx.insert()
    return str(tx.id)


async def append_voided(tx: LedgerTransaction, reason: str) -> str:
    """Insert a failed record that keeps its idempotency key. DuplicateKeyError if the key is already live."""
    tx.status = FAILED
    tx.failure_reason = reason
    tx.resolved_at = datetime.utcnow()
    await tx.insert()
    return str(tx.id)


async def get_transaction(tx_id: str | PydanticObjectId) -> LedgerTransaction | None:
    return await LedgerTransaction.get(PydanticObjectId(tx_id))


async def find_by_idempotency_key(key: str) -> LedgerTransaction | None:
    return await LedgerTransaction.find_one(LedgerTransaction.idempotency_key == key)


async def list_transactions(
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    kind: str | None = None,
    status: str | None = None,
) -> list[LedgerTransaction]:
    """Transactions touching user_id as either endpoint, newest first."""
    query = LedgerTransaction.find(
        Or(LedgerTransaction.from_account == user_id, LedgerTransaction.to_account == user_id)
    )
    if kind:
        query = query.find(LedgerTransaction.kind == kind)
    if status:
        query = query.find(LedgerTransaction.status == status)
    return await query.sort("-created_at", "-_id").skip(offset).limit(limit).to_list()


def _legs(tx: LedgerTransaction) -> list[tuple[str, int]]:
    legs = []
    if tx.from_account:
        legs.append((tx.from_account, -tx.amount))
    if tx.to_account:
        legs.append((tx.to_account, tx.amount))
    return legs


async def _apply_leg(user_id: str, delta: int, tx_id: str) -> bool:
    flt = {"user_id": user_id, "pending_txns": {"$ne": tx_id}}
    if delta < 0:
        flt["balance"] = {"$gte": -delta}
    res = await Account.get_motor_collection().update_one(
        flt,
        {
            "$inc": {"balance": delta},
            "$push": {"pending_txns": tx_id},
            "$set": {"updated_at": datetime.utcnow()},
        },
    )
    return res.modified_count == 1


async def _revert_legs(tx: LedgerTransaction) -> None:
    """Undo every leg of tx that is still marked on its account."""
    tx_id = str(tx.id)
    for user_id, delta in _legs(tx):
        res = await Account.get_motor_collection().update_one(
            {"user_id": user_id, "pending_txns": tx_id},
            {
                "$inc": {"balance": -delta},
                "$pull": {"pending_txns": tx_id},
                "$set": {"updated_at": datetime.utcnow()},
            },
        )
        if res.modified_count:
            log.warning("ledger_leg_reverted", transaction_id=tx_id, user_id=user_id, delta=delta)


async def release_legs(tx_id: str) -> None:
    """Drop the leg markers of a resolved transaction."""
    await Account.get_motor_collection().update_many(
        {"pending_txns": tx_id},
        {"$pull": {"pending_txns": tx_id}},
    )


async def _mark_completed(tx: LedgerTransaction) -> bool:
    now = datetime.utcnow()
    res = await LedgerTransaction.get_motor_collection().update_one(
        {"_id": tx.id, "status": PENDING},
        {"$set": {"status": COMPLETED, "resolved_at": now}},
    )
    if res.modified_count == 1:
        tx.status = COMPLETED
        tx.resolved_at = now
        return True
    return False


async def abort_transaction(tx: LedgerTransaction, reason: str) -> bool:
    """Fail a pending transaction and revert its applied legs.

    Releases the idempotency key so a retry with the same reference may run.
    Returns False when the record had already completed (nothing is reverted).
    """
    now = datetime.utcnow()
    tx_id = str(tx.id)
    released_key = f"{tx.idempotency_key}:failed:{tx_id}"
    res = await LedgerTransaction.get_motor_collection().update_one(
        {"_id": tx.id, "status": PENDING},
        {
            "$set": {
                "status": FAILED,
                "failure_reason": reason,
                "resolved_at": now,
                "idempotency_key": released_key,
            }
        },
    )
    if res.modified_count == 0:
        current = await get_transaction(tx.id)
        if current is not None and current.status == COMPLETED:
            tx.status = COMPLETED
            tx.resolved_at = current.resolved_at
            return False
    else:
        tx.status = FAILED
        tx.failure_reason = reason
        tx.resolved_at = now
        tx.idempotency_key = released_key
    await _revert_legs(tx)
    await release_legs(tx_id)
    return True


async def _finish(tx: LedgerTransaction) -> LedgerTransaction:
    try:
        await release_legs(str(tx.id))
    except Exception as e:
        # Completed either way; recovery drops leftover markers.
        log.warning("ledger_release_failed", transaction_id=str(tx.id), error=str(e))
    log.info(
        "ledger_committed",
        transaction_id=str(tx.id),
        kind=tx.kind,
        amount=tx.amount,
        from_account=tx.from_account,
        to_account=tx.to_account,
        reference=tx.reference,
    )
    return tx


async def commit_transaction(tx: LedgerTransaction) -> LedgerTransaction:
    """Apply a pending transaction: all balance writes and the completed record persist, or none do."""
    tx_id = str(tx.id)
    try:
        if tx.from_account and not await _apply_leg(tx.from_account, -tx.amount, tx_id):
            available = await get_balance_or_zero(tx.from_account)
            await abort_transaction(tx, "insufficient_funds")
            raise InsufficientFundsError(
                details={"required": tx.amount, "available": available},
            )
        if tx.to_account:
            await ensure_account(tx.to_account)
            if not await _apply_leg(tx.to_account, tx.amount, tx_id):
                raise SettlementFailedError("Destination account could not be credited")
        if not await _mark_completed(tx):
            raise SettlementFailedError("Transaction is no longer pending")
    except InsufficientFundsError:
        raise
    except Exception as e:
        reason = e.message if isinstance(e, SettlementFailedError) else f"{type(e).__name__}: {e}"
        log.error("ledger_commit_failed", transaction_id=tx_id, kind=tx.kind, reason=reason)
        try:
            still_failed = await abort_transaction(tx, reason[:500])
        except Exception as abort_exc:
            log.error("ledger_abort_failed", transaction_id=tx_id, error=str(abort_exc))
            raise SettlementFailedError(details={"transaction_id": tx_id}) from e
        if not still_failed:
            return await _finish(tx)
        if isinstance(e, SettlementFailedError):
            raise
        raise SettlementFailedError(details={"transaction_id": tx_id}) from e
    return await _finish(tx)


async def _sum_completed(**match) -> int:
    query = LedgerTransaction.find(LedgerTransaction.status == COMPLETED, match)
    total = await query.sum(LedgerTransaction.amount)
    return int(total or 0)


async def wallet_summary(user_id: str) -> dict:
    """Balance plus earned/spent totals derived from completed transactions."""
    account = await get_account(user_id)
    return {
        "user_id": user_id,
        "balance": account.balance if account else 0,
        "total_earned": await _sum_completed(to_account=user_id),
        "total_spent": await _sum_completed(from_account=user_id),
    }


async def reconcile_account(user_id: str) -> dict:
    """Compare the stored balance with the balance rebuilt from the log."""
    account = await get_account(user_id)
    if not account:
        raise NotFoundError("Account not found")
    earned = await _sum_completed(to_account=user_id)
    spent = await _sum_completed(from_account=user_id)
    ledger_balance = earned - spent
    return {
        "user_id": user_id,
        "balance": account.balance,
        "ledger_balance": ledger_balance,
        "in_flight": list(account.pending_txns),
        "consistent": account.balance == ledger_balance and not account.pending_txns,
    }
