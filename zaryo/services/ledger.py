"""Transaction engine: the only code path that moves token balances."""

from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError

from zaryo.core.exceptions import ConflictError, SettlementFailedError, ValidationError
from zaryo.core.logging import get_logger
from zaryo.models.ledger_transaction import (
    COMPLETED,
    ECOSYSTEM_PURCHASE,
    FAILED,
    ISSUANCE,
    KINDS,
    PURCHASE,
    REDEMPTION,
    LedgerTransaction,
)
from zaryo.services import ledger_store

log = get_logger(__name__)

TRANSFER_KINDS = (PURCHASE, ECOSYSTEM_PURCHASE)


def idempotency_key(kind: str, reference: str) -> str:
    return f"{kind}:{reference}"


def _validate(kind: str, amount, from_account: str | None, to_account: str | None) -> None:
    if kind not in KINDS:
        raise ValidationError(f"Invalid transaction kind: {kind}")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount must be a positive whole number of tokens", details={"amount": amount})
    if not from_account and not to_account:
        raise ValidationError("Transaction needs a source or a destination account")
    if kind == ISSUANCE and (from_account or not to_account):
        raise ValidationError("Issuance credits a destination account only")
    if kind == REDEMPTION and (to_account or not from_account):
        raise ValidationError("Redemption debits a source account only")
    if kind in TRANSFER_KINDS:
        if not from_account or not to_account:
            raise ValidationError(f"{kind} needs both a source and a destination account")
        if from_account == to_account:
            raise ValidationError("Source and destination must differ")


def _same_terms(tx: LedgerTransaction, amount: int, from_account: str | None, to_account: str | None) -> bool:
    return tx.amount == amount and tx.from_account == from_account and tx.to_account == to_account


async def _existing_result(
    key: str,
    amount: int,
    from_account: str | None,
    to_account: str | None,
) -> LedgerTransaction | None:
    """Completed transaction already settled under key, or None when there is none."""
    existing = await ledger_store.find_by_idempotency_key(key)
    if existing is None:
        return None
    if not _same_terms(existing, amount, from_account, to_account):
        raise ConflictError(
            "Reference already settled with different terms",
            details={"transaction_id": str(existing.id)},
        )
    if existing.status == COMPLETED:
        log.info("ledger_settle_replayed", transaction_id=str(existing.id), key=key)
        return existing
    if existing.status == FAILED:
        # Voided by recovery: the business record behind this reference was already unwound.
        raise ConflictError(
            "Settlement for this reference was cancelled",
            details={"transaction_id": str(existing.id)},
        )
    raise SettlementFailedError(
        "A settlement for this reference is already in progress",
        details={"transaction_id": str(existing.id)},
    )


async def settle(
    kind: str,
    amount: int,
    from_account: str | None = None,
    to_account: str | None = None,
    reference: str | None = None,
    notes: str | None = None,
) -> LedgerTransaction:
    """
    Validate and atomically apply one balance movement; returns the completed transaction.
    Idempotent on (kind, reference): a completed match is returned instead of re-applied.
    Raises InsufficientFundsError, SettlementFailedError (retryable), ValidationError, ConflictError.
    """
    _validate(kind, amount, from_account, to_account)
    tx_id = PydanticObjectId()
    if reference:
        key = idempotency_key(kind, reference)
        existing = await _existing_result(key, amount, from_account, to_account)
        if existing is not None:
            return existing
    else:
        key = idempotency_key(kind, f"tx:{tx_id}")

    tx = LedgerTransaction(
        id=tx_id,
        from_account=from_account,
        to_account=to_account,
        amount=amount,
        kind=kind,
        reference=reference,
        idempotency_key=key,
        notes=notes,
    )
    try:
        await ledger_store.append_transaction(tx)
    except DuplicateKeyError:
        # Lost an insert race against a concurrent attempt with the same reference.
        existing = await _existing_result(key, amount, from_account, to_account)
        if existing is not None:
            return existing
        raise SettlementFailedError("Concurrent settlement for this reference")
    return await ledger_store.commit_transaction(tx)


async def void_reference(
    kind: str,
    reference: str,
    amount: int,
    from_account: str | None = None,
    to_account: str | None = None,
    reason: str = "cancelled",
) -> LedgerTransaction | None:
    """
    Claim an unused reference with a failed record, so a late settle() for it is refused.
    Returns None once claimed, or the live transaction that already holds the reference.
    """
    tx = LedgerTransaction(
        from_account=from_account,
        to_account=to_account,
        amount=amount,
        kind=kind,
        reference=reference,
        idempotency_key=idempotency_key(kind, reference),
        notes="Voided before settlement",
    )
    try:
        await ledger_store.append_voided(tx, reason)
    except DuplicateKeyError:
        return await ledger_store.find_by_idempotency_key(tx.idempotency_key)
    log.info("ledger_reference_voided", transaction_id=str(tx.id), kind=kind, reference=reference, reason=reason)
    return None
