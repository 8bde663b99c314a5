import pytest

from zaryo.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InsufficientFundsError,
    SettlementFailedError,
)
from zaryo.core.identity import Identity, Role
from zaryo.models.ledger_transaction import REDEMPTION, LedgerTransaction
from zaryo.services import ledger, ledger_store, redemptions

pytestmark = pytest.mark.asyncio

ADMIN = Identity(user_id="ops", role=Role.ADMIN)
CREATOR = Identity(user_id="maker", role=Role.CREATOR)


async def _file(token_count: int = 40):
    return await redemptions.create_request(CREATOR, token_count, "wallet", "@maker", "+10000000000", name="Maker")


async def test_request_cannot_exceed_balance(db, fund):
    await fund("maker", 30)
    with pytest.raises(InsufficientFundsError):
        await _file(40)
    with pytest.raises(BadRequestError):
        await redemptions.create_request(CREATOR, 10, "wallet", " ", "+1")


async def test_complete_debits_once(db, fund):
    await fund("maker", 100)
    req = await _file(40)
    approved = await redemptions.approve_request(ADMIN, req.id)
    assert approved.status == "approved"

    done = await redemptions.complete_request(ADMIN, str(req.id), notes="paid")
    assert done.status == "completed"
    assert done.completed_by == "ops"
    assert await ledger_store.get_balance("maker") == 60

    again = await redemptions.complete_request(ADMIN, str(req.id))
    assert again.transaction_id == done.transaction_id
    assert await ledger_store.get_balance("maker") == 60
    assert await LedgerTransaction.find(LedgerTransaction.kind == REDEMPTION).count() == 1


async def test_complete_fails_when_tokens_were_spent(db, fund):
    await fund("maker", 50)
    req = await _file(40)
    await ledger.settle(REDEMPTION, 20, from_account="maker")

    with pytest.raises(InsufficientFundsError):
        await redemptions.complete_request(ADMIN, req.id)
    still = await redemptions.get_request(req.id)
    assert still.status == "pending"
    assert await ledger_store.get_balance("maker") == 30


async def test_rejected_request_cannot_complete(db, fund):
    await fund("maker", 50)
    req = await _file(40)
    await redemptions.reject_request(ADMIN, req.id, notes="duplicate")
    with pytest.raises(ConflictError):
        await redemptions.complete_request(ADMIN, req.id)
    with pytest.raises(ConflictError):
        await redemptions.approve_request(ADMIN, req.id)
    assert await ledger_store.get_balance("maker") == 50


async def test_only_admins_review(db, fund):
    await fund("maker", 50)
    req = await _file(40)
    with pytest.raises(ForbiddenError):
        await redemptions.complete_request(CREATOR, req.id)


async def test_redemption_flow_over_http(client, auth, fund):
    await fund("maker", 100)
    r = await client.post(
        "/v1/redemptions",
        json={
            "token_count": 25,
            "payment_method": "wallet",
            "account_username": "@maker",
            "phone_number": "+10000000000",
        },
        headers=auth("maker"),
    )
    assert r.status_code == 200
    request_id = r.json()["id"]

    r = await client.get("/v1/redemptions/all?status=pending", headers=auth("ops", "admin"))
    assert [x["id"] for x in r.json()["requests"]] == [request_id]

    r = await client.post(f"/v1/redemptions/{request_id}/complete", json={}, headers=auth("ops", "admin"))
    assert r.status_code == 200
    assert r.json()["status"] == "completed"

    r = await client.get("/v1/wallet", headers=auth("maker"))
    assert r.json()["balance"] == 75
    assert r.json()["total_spent"] == 25


async def test_request_cannot_be_rejected_while_being_paid_out(db, fund, monkeypatch):
    await fund("maker", 100)
    req = await _file(40)
    real_settle = ledger.settle
    rejections = []

    async def settle_with_competing_reject(*args, **kwargs):
        try:
            await redemptions.reject_request(Identity(user_id="ops-2", role=Role.ADMIN), req.id)
        except ConflictError as e:
            rejections.append(e)
        return await real_settle(*args, **kwargs)

    monkeypatch.setattr(ledger, "settle", settle_with_competing_reject)
    done = await redemptions.complete_request(ADMIN, req.id)

    assert len(rejections) == 1
    assert done.status == "completed"
    assert (await redemptions.get_request(req.id)).status == "completed"
    assert await ledger_store.get_balance("maker") == 60


async def test_failed_payout_returns_request_to_previous_state(db, fund):
    await fund("maker", 50)
    req = await _file(40)
    await redemptions.approve_request(ADMIN, req.id)
    await ledger.settle(REDEMPTION, 20, from_account="maker")

    with pytest.raises(InsufficientFundsError):
        await redemptions.complete_request(ADMIN, req.id)
    assert (await redemptions.get_request(req.id)).status == "approved"
    rejected = await redemptions.reject_request(ADMIN, req.id)
    assert rejected.status == "rejected"


async def test_interrupted_payout_resumes_without_double_debit(db, fund, monkeypatch):
    await fund("maker", 100)
    req = await _file(40)

    async def outage(*args, **kwargs):
        raise SettlementFailedError("Store unavailable")

    monkeypatch.setattr(ledger, "settle", outage)
    with pytest.raises(SettlementFailedError):
        await redemptions.complete_request(ADMIN, req.id)
    assert (await redemptions.get_request(req.id)).status == "processing"
    with pytest.raises(ConflictError):
        await redemptions.reject_request(ADMIN, req.id)

    monkeypatch.undo()
    done = await redemptions.complete_request(ADMIN, req.id)
    assert done.status == "completed"
    again = await redemptions.complete_request(ADMIN, req.id)
    assert again.transaction_id == done.transaction_id
    assert await ledger_store.get_balance("maker") == 60
