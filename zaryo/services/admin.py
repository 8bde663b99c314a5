"""Privileged balance corrections, recorded as issuance/redemption transactions."""

from zaryo.core.audit import log_event
from zaryo.core.exceptions import ForbiddenError, ValidationError
from zaryo.core.identity import Identity
from zaryo.core.logging import get_logger
from zaryo.models.ledger_transaction import ISSUANCE, REDEMPTION, LedgerTransaction
from zaryo.services import ledger, ledger_store

log = get_logger(__name__)

DEFAULT_NOTES = "Admin balance adjustment"


async def set_balance(
    actor: Identity,
    target_user_id: str,
    new_balance: int,
    notes: str | None = None,
) -> LedgerTransaction | None:
    """
    Bring target's balance to new_balance via one synthetic transaction.
    Returns the transaction, or None when the balance already matches.
    """
    if not actor.is_admin:
        raise ForbiddenError("Admin only")
    if not target_user_id:
        raise ValidationError("user_id is required")
    if isinstance(new_balance, bool) or not isinstance(new_balance, int) or new_balance < 0:
        raise ValidationError("new_balance must be a non-negative whole number", details={"new_balance": new_balance})

    current = await ledger_store.get_balance(target_user_id)
    delta = new_balance - current
    if delta == 0:
        log.info("balance_adjust_noop", target_user_id=target_user_id, balance=current)
        return None

    notes = notes or DEFAULT_NOTES
    if delta > 0:
        tx = await ledger.settle(ISSUANCE, delta, to_account=target_user_id, notes=notes)
    else:
        tx = await ledger.settle(REDEMPTION, -delta, from_account=target_user_id, notes=notes)

    log.info(
        "balance_adjusted",
        target_user_id=target_user_id,
        previous_balance=current,
        new_balance=new_balance,
        transaction_id=str(tx.id),
    )
    await log_event(
        actor.user_id,
        "balance_adjusted",
        "account",
        target_user_id,
        {
            "previous_balance": current,
            "new_balance": new_balance,
            "transaction_id": str(tx.id),
            "kind": tx.kind,
            "amount": tx.amount,
            "notes": notes,
        },
    )
    return tx
