"""Content purchase settlement and subscription-gated upload entitlement."""

from datetime import datetime, timezone

from beanie import PydanticObjectId
from bson.errors import InvalidId

from zaryo.core.exceptions import (
    ConflictError,
    NotFoundError,
    NotPurchasableError,
    SelfPurchaseError,
    ValidationError,
)
from zaryo.core.identity import Identity
from zaryo.core.logging import get_logger
from zaryo.models import content_item, purchase as purchase_model
from zaryo.models.content_item import ContentItem
from zaryo.models.ledger_transaction import PURCHASE, LedgerTransaction
from zaryo.models.purchase import Purchase
from zaryo.models.subscription_period import SubscriptionPeriod
from zaryo.services import hooks, ledger

log = get_logger(__name__)


def utc_naive(dt: datetime) -> datetime:
    """Mongo stores naive UTC; normalise aware datetimes before comparing."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_object_id(value: str | PydanticObjectId, what: str = "id") -> PydanticObjectId:
    if isinstance(value, PydanticObjectId):
        return value
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {what}", details={what: str(value)})


async def _reserve(item: ContentItem, purchase: Purchase) -> bool:
    """Compare-and-set: claim an active, unreserved item at the quoted price for this purchase."""
    res = await ContentItem.get_motor_collection().update_one(
        {
            "_id": item.id,
            "status": content_item.ACTIVE,
            "pending_purchase_id": None,
            "owner_id": purchase.seller_id,
            "price_tokens": purchase.tokens_paid,
        },
        {"$set": {"pending_purchase_id": purchase.id, "updated_at": datetime.utcnow()}},
    )
    return res.modified_count == 1


async def _release(purchase: Purchase) -> None:
    await ContentItem.get_motor_collection().update_one(
        {"_id": purchase.content_id, "pending_purchase_id": purchase.id},
        {"$set": {"pending_purchase_id": None, "updated_at": datetime.utcnow()}},
    )


async def _resolve_purchase(purchase: Purchase, status: str, **fields) -> bool:
    """Move a pending purchase to its terminal status; False if it was already resolved."""
    res = await Purchase.get_motor_collection().update_one(
        {"_id": purchase.id, "status": purchase_model.PENDING},
        {"$set": {"status": status, **fields}},
    )
    if res.modified_count == 1:
        purchase.status = status
        for k, v in fields.items():
            setattr(purchase, k, v)
        return True
    return False


async def refund_purchase(purchase: Purchase, reason: str) -> None:
    """Drop the item reservation and mark the purchase refunded. No balance was moved."""
    await _release(purchase)
    await _resolve_purchase(purchase, purchase_model.REFUNDED, failure_reason=reason)
    log.info("purchase_refunded", purchase_id=str(purchase.id), reason=reason)


async def finalize_purchase(purchase: Purchase, tx: LedgerTransaction | None) -> Purchase:
    """After the payment transaction completed: item -> sold, purchase -> completed, hooks fire."""
    now = datetime.utcnow()
    res = await ContentItem.get_motor_collection().update_one(
        {"_id": purchase.content_id, "pending_purchase_id": purchase.id},
        {
            "$set": {
                "status": content_item.SOLD,
                "sold_to": purchase.buyer_id,
                "sold_at": now,
                "pending_purchase_id": None,
                "updated_at": now,
            }
        },
    )
    if res.modified_count != 1:
        current = await Purchase.get(purchase.id)
        if current is not None and current.status == purchase_model.COMPLETED:
            return current  # finalized by a concurrent caller
        log.error("purchase_item_not_reserved", purchase_id=str(purchase.id), content_id=str(purchase.content_id))
        raise ConflictError(
            "Content reservation was lost before the purchase could complete",
            details={"purchase_id": str(purchase.id), "transaction_id": str(tx.id) if tx else None},
        )
    if not await _resolve_purchase(
        purchase,
        purchase_model.COMPLETED,
        transaction_id=str(tx.id) if tx else None,
        completed_at=now,
    ):
        log.error("purchase_not_pending", purchase_id=str(purchase.id))
        raise ConflictError(
            "Purchase was resolved before it could complete",
            details={"purchase_id": str(purchase.id), "transaction_id": str(tx.id) if tx else None},
        )
    log.info(
        "purchase_completed",
        purchase_id=str(purchase.id),
        content_id=str(purchase.content_id),
        buyer_id=purchase.buyer_id,
        seller_id=purchase.seller_id,
        tokens_paid=purchase.tokens_paid,
    )
    await hooks.transfer_ownership(
        str(purchase.content_id), purchase.seller_id, purchase.buyer_id, str(purchase.id)
    )
    await hooks.notify_settlement(
        "content.purchased",
        {
            "purchase_id": str(purchase.id),
            "content_id": str(purchase.content_id),
            "buyer_id": purchase.buyer_id,
            "seller_id": purchase.seller_id,
            "tokens_paid": purchase.tokens_paid,
        },
    )
    return purchase


async def purchase_content(buyer_id: str, content_id: str | PydanticObjectId) -> Purchase:
    """
    Buy a content item with tokens.
    The item only becomes sold after the buyer -> seller transaction has completed;
    any failure leaves balances and the item untouched and the purchase refunded.
    """
    item = await ContentItem.get(parse_object_id(content_id, "content_id"))
    if not item:
        raise NotFoundError("Content not found")
    if item.status != content_item.ACTIVE or item.pending_purchase_id is not None:
        raise NotPurchasableError()
    if item.owner_id == buyer_id:
        raise SelfPurchaseError()

    purchase = Purchase(
        content_id=item.id,
        seller_id=item.owner_id,
        buyer_id=buyer_id,
        tokens_paid=item.price_tokens,
    )
    await purchase.insert()
    if not await _reserve(item, purchase):
        await _resolve_purchase(purchase, purchase_model.REFUNDED, failure_reason="not_purchasable")
        log.info("purchase_lost_race", content_id=str(item.id), buyer_id=buyer_id)
        raise NotPurchasableError()

    tx = None
    if purchase.tokens_paid > 0:
        try:
            tx = await ledger.settle(
                PURCHASE,
                purchase.tokens_paid,
                from_account=buyer_id,
                to_account=purchase.seller_id,
                reference=str(purchase.id),
                notes=f"Purchase of {item.title}" if item.title else None,
            )
        except Exception as e:
            await refund_purchase(purchase, getattr(e, "code", type(e).__name__))
            raise
    return await finalize_purchase(purchase, tx)


async def list_purchases(
    buyer_id: str | None = None,
    seller_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Purchase]:
    query = Purchase.find()
    if buyer_id:
        query = query.find(Purchase.buyer_id == buyer_id)
    if seller_id:
        query = query.find(Purchase.seller_id == seller_id)
    return await query.sort("-created_at", "-_id").skip(offset).limit(limit).to_list()


async def get_subscription(user_id: str) -> SubscriptionPeriod | None:
    return await SubscriptionPeriod.find_one(SubscriptionPeriod.user_id == user_id)


async def check_upload_entitlement(user_id: str, now: datetime | None = None) -> bool:
    """True while the user's current period ends strictly in the future. Read at call time, never cached."""
    sub = await get_subscription(user_id)
    if sub is None:
        return False
    return utc_naive(sub.current_period_end) > utc_naive(now or datetime.utcnow())


async def adjust_balance(
    actor: Identity,
    target_user_id: str,
    new_balance: int,
    notes: str | None = None,
) -> LedgerTransaction | None:
    from zaryo.services import admin as admin_service
    return await admin_service.set_balance(actor, target_user_id, new_balance, notes)
