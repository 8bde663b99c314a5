"""Resolve settlements interrupted mid-flight (process crash, store outage)."""

from datetime import datetime, timedelta

from zaryo.core.config import get_settings
from zaryo.core.logging import get_logger
from zaryo.models import product as product_model, purchase as purchase_model
from zaryo.models.account import Account
from zaryo.models.content_item import ContentItem
from zaryo.models.ledger_transaction import COMPLETED, FAILED, PENDING, PURCHASE, LedgerTransaction
from zaryo.models.product import ProductPurchase
from zaryo.models.purchase import Purchase
from zaryo.services import ledger, ledger_store, products, settlement

log = get_logger(__name__)

BATCH_SIZE = 200


async def _fail_stale_transactions(cutoff: datetime) -> int:
    failed = 0
    stale = await LedgerTransaction.find(
        LedgerTransaction.status == PENDING,
        LedgerTransaction.created_at < cutoff,
    ).limit(BATCH_SIZE).to_list()
    for tx in stale:
        if await ledger_store.abort_transaction(tx, "stale_pending"):
            failed += 1
    return failed


async def _clear_leg_markers() -> int:
    """Release markers of resolved transactions; revert the legs of failed ones."""
    cleared = 0
    accounts = await Account.find({"pending_txns.0": {"$exists": True}}).limit(BATCH_SIZE).to_list()
    for account in accounts:
        for tx_id in list(account.pending_txns):
            tx = await ledger_store.get_transaction(tx_id)
            if tx is None:
                log.error("recovery_orphan_marker", user_id=account.user_id, transaction_id=tx_id)
                continue
            if tx.status == COMPLETED:
                await ledger_store.release_legs(tx_id)
                cleared += 1
            elif tx.status == FAILED:
                await ledger_store.abort_transaction(tx, tx.failure_reason or "failed")
                cleared += 1
    return cleared


async def _resolve_stale_purchases(cutoff: datetime) -> dict[str, int]:
    out = {"completed": 0, "refunded": 0}
    stale = await Purchase.find(
        Purchase.status == purchase_model.PENDING,
        Purchase.created_at < cutoff,
    ).limit(BATCH_SIZE).to_list()
    for p in stale:
        tx = await ledger_store.find_by_idempotency_key(ledger.idempotency_key(PURCHASE, str(p.id)))
        if tx is None and p.tokens_paid > 0:
            # Hold the reference first so an in-flight settle for this purchase cannot charge after the refund.
            tx = await ledger.void_reference(
                PURCHASE,
                str(p.id),
                p.tokens_paid,
                from_account=p.buyer_id,
                to_account=p.seller_id,
                reason="stale_pending",
            )
        if tx is not None and tx.status == PENDING:
            continue
        item = await ContentItem.get(p.content_id)
        free_and_reserved = p.tokens_paid == 0 and item is not None and item.pending_purchase_id == p.id
        if (tx is not None and tx.status == COMPLETED) or free_and_reserved:
            await settlement.finalize_purchase(p, tx)
            out["completed"] += 1
        else:
            await settlement.refund_purchase(p, "stale_pending")
            out["refunded"] += 1
    return out


async def _resolve_stale_product_purchases(cutoff: datetime) -> dict[str, int]:
    out = {"completed": 0, "refunded": 0}
    stale = await ProductPurchase.find(
        ProductPurchase.status == product_model.PURCHASE_PENDING,
        ProductPurchase.created_at < cutoff,
    ).limit(BATCH_SIZE).to_list()
    for pp in stale:
        result = await products.recover_product_purchase(pp)
        if result in out:
            out[result] += 1
    return out


async def recover_stale_settlements(older_than_seconds: int | None = None) -> dict:
    """Fail stale pending transactions, clean leg markers, and settle or refund orphaned purchases."""
    if older_than_seconds is None:
        older_than_seconds = get_settings().settlement_stale_after_seconds
    cutoff = datetime.utcnow() - timedelta(seconds=older_than_seconds)
    result = {
        "failed_transactions": await _fail_stale_transactions(cutoff),
        "cleared_markers": await _clear_leg_markers(),
        "purchases": await _resolve_stale_purchases(cutoff),
        "product_purchases": await _resolve_stale_product_purchases(cutoff),
    }
    log.info("settlement_recovery", **result)
    return result
