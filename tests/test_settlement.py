import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from beanie import PydanticObjectId

from zaryo.core.config import get_settings
from zaryo.core.exceptions import (
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    NotPurchasableError,
    SelfPurchaseError,
    ValidationError,
)
from zaryo.models.audit_log import AuditLog
from zaryo.models.content_item import ContentItem
from zaryo.models.ledger_transaction import PURCHASE, LedgerTransaction
from zaryo.models.purchase import Purchase
from zaryo.models.subscription_period import SubscriptionPeriod
from zaryo.services import hooks, ledger, ledger_store, recovery, settlement

pytestmark = pytest.mark.asyncio


async def test_purchase_pays_seller_and_marks_item_sold(db, fund, make_content):
    await fund("buyer", 100)
    item = await make_content("seller", 100)

    purchase = await settlement.purchase_content("buyer", str(item.id))

    assert purchase.status == "completed"
    assert purchase.tokens_paid == 100
    assert purchase.transaction_id
    assert await ledger_store.get_balance("buyer") == 0
    assert await ledger_store.get_balance("seller") == 100
    sold = await ContentItem.get(item.id)
    assert sold.status == "sold"
    assert sold.sold_to == "buyer"
    assert sold.pending_purchase_id is None
    tx = await ledger_store.get_transaction(purchase.transaction_id)
    assert tx.kind == PURCHASE
    assert tx.reference == str(purchase.id)


async def test_sold_item_cannot_be_bought_again(db, fund, make_content):
    await fund("buyer", 100)
    await fund("other", 100)
    item = await make_content("seller", 100)
    await settlement.purchase_content("buyer", item.id)

    with pytest.raises(NotPurchasableError):
        await settlement.purchase_content("other", item.id)
    assert await ledger_store.get_balance("other") == 100
    assert await ledger_store.get_balance("seller") == 100


async def test_insufficient_funds_leaves_item_listed(db, fund, make_content):
    await fund("buyer", 50)
    item = await make_content("seller", 75)

    with pytest.raises(InsufficientFundsError):
        await settlement.purchase_content("buyer", item.id)

    assert await ledger_store.get_balance("buyer") == 50
    assert await ledger_store.get_balance_or_zero("seller") == 0
    listed = await ContentItem.get(item.id)
    assert listed.status == "active"
    assert listed.pending_purchase_id is None
    purchase = await Purchase.find_one(Purchase.content_id == item.id)
    assert purchase.status == "refunded"
    assert purchase.failure_reason == "INSUFFICIENT_FUNDS"


async def test_own_item_is_rejected(db, fund, make_content):
    await fund("seller", 100)
    item = await make_content("seller", 10)
    with pytest.raises(SelfPurchaseError):
        await settlement.purchase_content("seller", item.id)
    assert await Purchase.find_all().count() == 0


async def test_unknown_and_malformed_item_ids(db):
    with pytest.raises(NotFoundError):
        await settlement.purchase_content("buyer", str(PydanticObjectId()))
    with pytest.raises(ValidationError):
        await settlement.purchase_content("buyer", "not-an-id")


async def test_archived_item_is_not_purchasable(db, fund, make_content):
    await fund("buyer", 100)
    item = await make_content("seller", 10, status="archived")
    with pytest.raises(NotPurchasableError):
        await settlement.purchase_content("buyer", item.id)
    assert await ledger_store.get_balance("buyer") == 100


async def test_reserved_item_is_not_purchasable(db, fund, make_content):
    await fund("buyer", 100)
    item = await make_content("seller", 10)
    item.pending_purchase_id = PydanticObjectId()
    await item.save()
    with pytest.raises(NotPurchasableError):
        await settlement.purchase_content("buyer", item.id)


async def test_concurrent_buyers_get_one_sale(db, fund, make_content):
    await fund("b1", 100)
    await fund("b2", 100)
    item = await make_content("seller", 60)

    results = await asyncio.gather(
        settlement.purchase_content("b1", item.id),
        settlement.purchase_content("b2", item.id),
        return_exceptions=True,
    )

    completed = [r for r in results if isinstance(r, Purchase)]
    assert len(completed) == 1
    assert sum(isinstance(r, NotPurchasableError) for r in results) == 1
    assert await ledger_store.get_balance("seller") == 60
    balances = sorted([await ledger_store.get_balance("b1"), await ledger_store.get_balance("b2")])
    assert balances == [40, 100]


async def test_free_item_completes_without_transaction(db, make_content):
    item = await make_content("seller", 0)
    purchase = await settlement.purchase_content("buyer", item.id)
    assert purchase.status == "completed"
    assert purchase.transaction_id is None
    assert await LedgerTransaction.find_all().count() == 0
    assert (await ContentItem.get(item.id)).status == "sold"


async def test_ownership_handover_is_recorded(db, fund, make_content):
    await fund("buyer", 10)
    item = await make_content("seller", 10)
    purchase = await settlement.purchase_content("buyer", item.id)
    entry = await AuditLog.find_one(AuditLog.event_type == "content_ownership_transferred")
    assert entry.entity_id == str(item.id)
    assert entry.metadata["purchase_id"] == str(purchase.id)


async def test_notification_failure_keeps_the_sale(db, fund, make_content, monkeypatch):
    monkeypatch.setattr(get_settings(), "notification_webhook_url", "http://notify.test/hook")

    async def unreachable(self, url, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(httpx.AsyncClient, "post", unreachable)
    await fund("buyer", 100)
    item = await make_content("seller", 100)

    purchase = await settlement.purchase_content("buyer", item.id)

    assert purchase.status == "completed"
    assert await ledger_store.get_balance("seller") == 100
    assert (await ContentItem.get(item.id)).status == "sold"


async def test_notify_posts_event(db, monkeypatch):
    monkeypatch.setattr(get_settings(), "notification_webhook_url", "http://notify.test/hook")
    sent = {}

    async def capture(self, url, **kwargs):
        sent["url"] = url
        sent["json"] = kwargs["json"]
        return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", capture)
    assert await hooks.notify_settlement("content.purchased", {"purchase_id": "p1"}) is True
    assert sent["json"] == {"event": "content.purchased", "data": {"purchase_id": "p1"}}


async def test_notify_without_url_is_skipped(db):
    assert await hooks.notify_settlement("content.purchased", {}) is False


async def test_list_purchases_by_role(db, fund, make_content):
    await fund("buyer", 100)
    first = await make_content("seller", 10, title="One")
    second = await make_content("seller", 20, title="Two")
    await settlement.purchase_content("buyer", first.id)
    await settlement.purchase_content("buyer", second.id)

    bought = await settlement.list_purchases(buyer_id="buyer")
    assert [p.tokens_paid for p in bought] == [20, 10]
    sold = await settlement.list_purchases(seller_id="seller", limit=1)
    assert len(sold) == 1
    assert await settlement.list_purchases(buyer_id="seller") == []


async def _subscribe(user_id: str, period_end: datetime, status: str = "active"):
    sub = SubscriptionPeriod(user_id=user_id, current_period_end=period_end, status=status)
    await sub.insert()
    return sub


async def test_entitlement_follows_period_end(db):
    now = datetime.utcnow()
    await _subscribe("active", now + timedelta(days=3))
    await _subscribe("lapsed", now - timedelta(seconds=1))

    assert await settlement.check_upload_entitlement("active") is True
    assert await settlement.check_upload_entitlement("lapsed") is False
    assert await settlement.check_upload_entitlement("never-subscribed") is False


async def test_entitlement_boundary_is_exclusive(db):
    end = datetime(2030, 1, 1, 12, 0, 0)
    await _subscribe("edge", end)
    assert await settlement.check_upload_entitlement("edge", now=end) is False
    assert await settlement.check_upload_entitlement("edge", now=end - timedelta(seconds=1)) is True
    aware = end.replace(tzinfo=timezone.utc) - timedelta(minutes=1)
    assert await settlement.check_upload_entitlement("edge", now=aware) is True


async def test_entitlement_is_read_at_call_time(db):
    sub = await _subscribe("renewing", datetime.utcnow() - timedelta(days=1))
    assert await settlement.check_upload_entitlement("renewing") is False
    sub.current_period_end = datetime.utcnow() + timedelta(days=30)
    await sub.save()
    assert await settlement.check_upload_entitlement("renewing") is True


async def test_seller_retrying_on_sold_item_gets_not_purchasable(db, fund, make_content):
    await fund("buyer", 10)
    await fund("seller", 10)
    item = await make_content("seller", 10)
    await settlement.purchase_content("buyer", item.id)
    with pytest.raises(NotPurchasableError):
        await settlement.purchase_content("seller", item.id)


async def test_recovery_during_payment_cancels_the_charge(db, fund, make_content, monkeypatch):
    await fund("buyer", 100)
    item = await make_content("seller", 100)
    real_settle = ledger.settle

    async def slow_settle(*args, **kwargs):
        # The request stalls until the purchase is stale and the sweep runs.
        await Purchase.get_motor_collection().update_many(
            {}, {"$set": {"created_at": datetime.utcnow() - timedelta(hours=1)}}
        )
        await recovery.recover_stale_settlements(older_than_seconds=60)
        return await real_settle(*args, **kwargs)

    monkeypatch.setattr(ledger, "settle", slow_settle)
    with pytest.raises(ConflictError):
        await settlement.purchase_content("buyer", item.id)

    purchase = await Purchase.find_one(Purchase.content_id == item.id)
    assert purchase.status == "refunded"
    listed = await ContentItem.get(item.id)
    assert listed.status == "active"
    assert listed.pending_purchase_id is None
    assert await ledger_store.get_balance("buyer") == 100
    assert await ledger_store.get_balance_or_zero("seller") == 0

    monkeypatch.undo()
    retried = await settlement.purchase_content("buyer", item.id)
    assert retried.status == "completed"
    assert await ledger_store.get_balance("seller") == 100


async def test_finalize_refuses_a_refunded_purchase(db, make_content):
    item = await make_content("seller", 0)
    purchase = Purchase(content_id=item.id, seller_id="seller", buyer_id="buyer", tokens_paid=0)
    await purchase.insert()
    await settlement.refund_purchase(purchase, "stale_pending")
    with pytest.raises(ConflictError):
        await settlement.finalize_purchase(purchase, None)
    assert (await ContentItem.get(item.id)).status == "active"
