import asyncio

import pytest

from zaryo.core.exceptions import (
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    SettlementFailedError,
    ValidationError,
)
from zaryo.models.account import Account
from zaryo.models.ledger_transaction import (
    COMPLETED,
    ECOSYSTEM_PURCHASE,
    FAILED,
    ISSUANCE,
    PURCHASE,
    REDEMPTION,
    LedgerTransaction,
)
from zaryo.services import ledger, ledger_store

pytestmark = pytest.mark.asyncio


async def test_issuance_creates_account_and_credits(db):
    tx = await ledger.settle(ISSUANCE, 100, to_account="alice")
    assert tx.status == COMPLETED
    assert tx.from_account is None
    assert await ledger_store.get_balance("alice") == 100


async def test_transfer_moves_tokens(db, fund):
    await fund("buyer", 100)
    tx = await ledger.settle(PURCHASE, 40, from_account="buyer", to_account="seller", reference="p-1")
    assert tx.status == COMPLETED
    assert await ledger_store.get_balance("buyer") == 60
    assert await ledger_store.get_balance("seller") == 40


async def test_insufficient_funds_changes_nothing(db, fund):
    await fund("buyer", 50)
    with pytest.raises(InsufficientFundsError) as exc:
        await ledger.settle(PURCHASE, 75, from_account="buyer", to_account="seller", reference="p-2")
    assert exc.value.details == {"required": 75, "available": 50}
    assert await ledger_store.get_balance("buyer") == 50
    assert await ledger_store.get_balance_or_zero("seller") == 0
    txs = await LedgerTransaction.find(LedgerTransaction.kind == PURCHASE).to_list()
    assert len(txs) == 1
    assert txs[0].status == FAILED
    assert txs[0].failure_reason == "insufficient_funds"


async def test_redemption_of_full_balance(db, fund):
    await fund("bob", 30)
    await ledger.settle(REDEMPTION, 30, from_account="bob")
    assert await ledger_store.get_balance("bob") == 0
    with pytest.raises(InsufficientFundsError):
        await ledger.settle(REDEMPTION, 1, from_account="bob")


async def test_same_reference_is_applied_once(db, fund):
    await fund("buyer", 100)
    first = await ledger.settle(PURCHASE, 40, from_account="buyer", to_account="seller", reference="p-3")
    second = await ledger.settle(PURCHASE, 40, from_account="buyer", to_account="seller", reference="p-3")
    assert second.id == first.id
    assert await ledger_store.get_balance("buyer") == 60
    assert await LedgerTransaction.find(LedgerTransaction.reference == "p-3").count() == 1


async def test_same_reference_different_terms_conflicts(db, fund):
    await fund("buyer", 100)
    await ledger.settle(PURCHASE, 40, from_account="buyer", to_account="seller", reference="p-4")
    with pytest.raises(ConflictError):
        await ledger.settle(PURCHASE, 41, from_account="buyer", to_account="seller", reference="p-4")
    assert await ledger_store.get_balance("buyer") == 60


async def test_failed_reference_can_be_retried(db, fund):
    with pytest.raises(InsufficientFundsError):
        await ledger.settle(PURCHASE, 20, from_account="buyer", to_account="seller", reference="p-5")
    await fund("buyer", 20)
    tx = await ledger.settle(PURCHASE, 20, from_account="buyer", to_account="seller", reference="p-5")
    assert tx.status == COMPLETED
    assert await ledger_store.get_balance("seller") == 20


@pytest.mark.parametrize(
    "kind,amount,src,dst",
    [
        (PURCHASE, 0, "a", "b"),
        (PURCHASE, -5, "a", "b"),
        (PURCHASE, 1.5, "a", "b"),
        (PURCHASE, True, "a", "b"),
        (PURCHASE, 5, "a", "a"),
        (PURCHASE, 5, None, "b"),
        (ECOSYSTEM_PURCHASE, 5, "a", None),
        (ISSUANCE, 5, "a", "b"),
        (REDEMPTION, 5, None, "b"),
        ("gift", 5, "a", "b"),
    ],
)
async def test_malformed_requests_are_rejected(db, kind, amount, src, dst):
    with pytest.raises(ValidationError):
        await ledger.settle(kind, amount, from_account=src, to_account=dst)
    assert await LedgerTransaction.find_all().count() == 0


async def test_history_is_newest_first_and_filtered(db, fund):
    await fund("carol", 100)
    await ledger.settle(PURCHASE, 10, from_account="carol", to_account="dave", reference="h-1")
    await ledger.settle(PURCHASE, 5, from_account="dave", to_account="carol", reference="h-2")
    txs = await ledger_store.list_transactions("carol")
    assert [t.reference for t in txs] == ["h-2", "h-1", None]
    issued = await ledger_store.list_transactions("carol", kind=ISSUANCE)
    assert len(issued) == 1
    assert await ledger_store.list_transactions("nobody") == []


async def test_concurrent_debits_never_overdraw(db, fund):
    await fund("buyer", 100)
    results = await asyncio.gather(
        *[
            ledger.settle(PURCHASE, 30, from_account="buyer", to_account=f"s{i}", reference=f"c-{i}")
            for i in range(5)
        ],
        return_exceptions=True,
    )
    ok = [r for r in results if isinstance(r, LedgerTransaction)]
    rejected = [r for r in results if isinstance(r, InsufficientFundsError)]
    assert len(ok) == 3
    assert len(rejected) == 2
    assert await ledger_store.get_balance("buyer") == 10


async def test_transfers_conserve_tokens(db, fund):
    await fund("u1", 100)
    await fund("u2", 50)
    await ledger.settle(PURCHASE, 70, from_account="u1", to_account="u2", reference="t-1")
    await ledger.settle(ECOSYSTEM_PURCHASE, 100, from_account="u2", to_account="u3", reference="t-2")
    with pytest.raises(InsufficientFundsError):
        await ledger.settle(PURCHASE, 31, from_account="u1", to_account="u3", reference="t-3")
    total = sum([a.balance for a in await Account.find_all().to_list()])
    assert total == 150


async def test_failed_commit_restores_balances(db, fund, monkeypatch):
    await fund("buyer", 100)

    async def refuse(tx):
        return False

    monkeypatch.setattr(ledger_store, "_mark_completed", refuse)
    with pytest.raises(SettlementFailedError) as exc:
        await ledger.settle(PURCHASE, 40, from_account="buyer", to_account="seller", reference="r-1")
    assert exc.value.details["retryable"] is True
    assert await ledger_store.get_balance("buyer") == 100
    assert await ledger_store.get_balance_or_zero("seller") == 0
    tx = await LedgerTransaction.find_one(LedgerTransaction.reference == "r-1")
    assert tx.status == FAILED
    buyer = await ledger_store.get_account("buyer")
    assert buyer.pending_txns == []


async def test_credit_leg_failure_reverts_debit(db, fund, monkeypatch):
    await fund("buyer", 100)
    real_apply = ledger_store._apply_leg

    async def flaky_apply(user_id, delta, tx_id):
        if delta > 0:
            raise ConnectionError("store unavailable")
        return await real_apply(user_id, delta, tx_id)

    monkeypatch.setattr(ledger_store, "_apply_leg", flaky_apply)
    with pytest.raises(SettlementFailedError):
        await ledger.settle(PURCHASE, 40, from_account="buyer", to_account="seller", reference="r-2")
    monkeypatch.undo()

    assert await ledger_store.get_balance("buyer") == 100
    assert await ledger_store.get_balance("seller") == 0
    # Key was released, so the retry goes through.
    tx = await ledger.settle(PURCHASE, 40, from_account="buyer", to_account="seller", reference="r-2")
    assert tx.status == COMPLETED
    assert await ledger_store.get_balance("seller") == 40


async def test_wallet_summary_and_reconcile(db, fund):
    await fund("erin", 80)
    await ledger.settle(PURCHASE, 30, from_account="erin", to_account="frank", reference="w-1")
    summary = await ledger_store.wallet_summary("erin")
    assert summary == {"user_id": "erin", "balance": 50, "total_earned": 80, "total_spent": 30}
    report = await ledger_store.reconcile_account("erin")
    assert report["ledger_balance"] == 50
    assert report["consistent"] is True


async def test_reconcile_flags_drift(db, fund):
    await fund("gina", 10)
    await Account.get_motor_collection().update_one({"user_id": "gina"}, {"$inc": {"balance": 5}})
    report = await ledger_store.reconcile_account("gina")
    assert report["balance"] == 15
    assert report["ledger_balance"] == 10
    assert report["consistent"] is False


async def test_unknown_account(db):
    with pytest.raises(NotFoundError):
        await ledger_store.get_balance("ghost")
    assert await ledger_store.get_balance_or_zero("ghost") == 0
    summary = await ledger_store.wallet_summary("ghost")
    assert summary["balance"] == 0


async def test_abort_error_on_shortfall_is_reported_as_retryable(db, fund, monkeypatch):
    await fund("buyer", 10)
    real_abort = ledger_store.abort_transaction
    calls = []

    async def flaky_abort(tx, reason):
        calls.append(reason)
        if len(calls) == 1:
            raise ConnectionError("store unavailable")
        return await real_abort(tx, reason)

    monkeypatch.setattr(ledger_store, "abort_transaction", flaky_abort)
    with pytest.raises(SettlementFailedError):
        await ledger.settle(PURCHASE, 50, from_account="buyer", to_account="seller", reference="a-1")

    assert calls[0] == "insufficient_funds"
    tx = await LedgerTransaction.find_one(LedgerTransaction.reference == "a-1")
    assert tx.status == FAILED
    assert await ledger_store.get_balance("buyer") == 10


async def test_voided_reference_refuses_late_settle(db, fund):
    await fund("buyer", 100)
    assert await ledger.void_reference(PURCHASE, "v-1", 30, from_account="buyer", to_account="seller") is None
    with pytest.raises(ConflictError):
        await ledger.settle(PURCHASE, 30, from_account="buyer", to_account="seller", reference="v-1")
    assert await ledger_store.get_balance("buyer") == 100

    tx = await ledger.settle(PURCHASE, 30, from_account="buyer", to_account="seller", reference="v-2")
    live = await ledger.void_reference(PURCHASE, "v-2", 30, from_account="buyer", to_account="seller")
    assert live.id == tx.id
