"""Ecosystem products: admin-listed goods bought with tokens, with optional limited stock."""

from datetime import datetime

from beanie import PydanticObjectId

from zaryo.core.exceptions import (
    ForbiddenError,
    NotFoundError,
    NotPurchasableError,
    SelfPurchaseError,
    ValidationError,
)
from zaryo.core.identity import Identity
from zaryo.core.logging import get_logger
from zaryo.models import product as product_model
from zaryo.models.ledger_transaction import COMPLETED, ECOSYSTEM_PURCHASE, PENDING
from zaryo.models.product import UNLIMITED_STOCK, Product, ProductPurchase
from zaryo.services import hooks, ledger, ledger_store
from zaryo.services.settlement import parse_object_id

log = get_logger(__name__)


def _positive_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive whole number")
    return value


async def create_product(
    actor: Identity,
    title: str,
    price_tokens: int,
    description: str = "",
    category: str | None = None,
    stock_quantity: int = UNLIMITED_STOCK,
) -> Product:
    if not actor.is_admin:
        raise ForbiddenError("Admin only")
    if isinstance(stock_quantity, bool) or not isinstance(stock_quantity, int) or stock_quantity < UNLIMITED_STOCK:
        raise ValidationError("stock_quantity must be -1 (unlimited) or a non-negative number")
    product = Product(
        seller_id=actor.user_id,
        title=title.strip(),
        description=description,
        category=category,
        price_tokens=_positive_int(price_tokens, "price_tokens"),
        stock_quantity=stock_quantity,
        status=product_model.OUT_OF_STOCK if stock_quantity == 0 else product_model.ACTIVE,
    )
    await product.insert()
    log.info("product_created", product_id=str(product.id), price_tokens=product.price_tokens)
    return product


async def get_product(product_id: str | PydanticObjectId) -> Product:
    product = await Product.get(parse_object_id(product_id, "product_id"))
    if not product:
        raise NotFoundError("Product not found or inactive")
    return product


async def list_products(include_inactive: bool = False) -> list[Product]:
    query = Product.find() if include_inactive else Product.find(Product.status == product_model.ACTIVE)
    return await query.sort("-created_at").to_list()


async def archive_product(actor: Identity, product_id) -> Product:
    if not actor.is_admin:
        raise ForbiddenError("Admin only")
    product = await get_product(product_id)
    product.status = product_model.ARCHIVED
    product.updated_at = datetime.utcnow()
    await product.save()
    return product


async def _take_stock(product: Product, quantity: int) -> bool:
    flt = {"_id": product.id, "status": product_model.ACTIVE}
    update = {"$set": {"updated_at": datetime.utcnow()}}
    if product.stock_quantity != UNLIMITED_STOCK:
        flt["stock_quantity"] = {"$gte": quantity}
        update["$inc"] = {"stock_quantity": -quantity}
    res = await Product.get_motor_collection().update_one(flt, update)
    return res.modified_count == 1


async def _return_stock(product: Product, quantity: int) -> None:
    if product.stock_quantity == UNLIMITED_STOCK:
        return
    coll = Product.get_motor_collection()
    await coll.update_one({"_id": product.id}, {"$inc": {"stock_quantity": quantity}})
    await coll.update_one(
        {"_id": product.id, "status": product_model.OUT_OF_STOCK, "stock_quantity": {"$gt": 0}},
        {"$set": {"status": product_model.ACTIVE}},
    )


async def _mark_sold_out(product: Product) -> None:
    if product.stock_quantity == UNLIMITED_STOCK:
        return
    await Product.get_motor_collection().update_one(
        {"_id": product.id, "status": product_model.ACTIVE, "stock_quantity": {"$lte": 0}},
        {"$set": {"status": product_model.OUT_OF_STOCK, "updated_at": datetime.utcnow()}},
    )


async def _resolve(pp: ProductPurchase, status: str, **fields) -> bool:
    """Move a pending product purchase to its terminal status; False if it was already resolved."""
    res = await ProductPurchase.get_motor_collection().update_one(
        {"_id": pp.id, "status": product_model.PURCHASE_PENDING},
        {"$set": {"status": status, **fields}},
    )
    if res.modified_count == 1:
        pp.status = status
        for k, v in fields.items():
            setattr(pp, k, v)
        return True
    return False


async def purchase_product(buyer_id: str, product_id, quantity: int = 1) -> ProductPurchase:
    """Take stock, then settle buyer -> seller; stock is returned if settlement fails."""
    quantity = _positive_int(quantity, "quantity")
    product = await get_product(product_id)
    if product.status != product_model.ACTIVE:
        raise NotPurchasableError("Product not found or inactive")
    if product.seller_id == buyer_id:
        raise SelfPurchaseError("Cannot purchase your own product")
    if not await _take_stock(product, quantity):
        raise NotPurchasableError("Insufficient stock")

    pp = ProductPurchase(
        product_id=product.id,
        buyer_id=buyer_id,
        seller_id=product.seller_id,
        quantity=quantity,
        tokens_paid=product.price_tokens * quantity,
    )
    try:
        await pp.insert()
        tx = await ledger.settle(
            ECOSYSTEM_PURCHASE,
            pp.tokens_paid,
            from_account=buyer_id,
            to_account=product.seller_id,
            reference=str(pp.id),
            notes=f"Purchase of {product.title}",
        )
    except Exception:
        # Whoever refunds the purchase returns its stock, exactly once.
        if pp.id is None or await _resolve(pp, product_model.PURCHASE_REFUNDED):
            await _return_stock(product, quantity)
        raise

    await _mark_sold_out(product)
    if not await _resolve(pp, product_model.PURCHASE_COMPLETED, transaction_id=str(tx.id)):
        pp = await ProductPurchase.get(pp.id)
    log.info("product_purchased", product_id=str(product.id), buyer_id=buyer_id, quantity=quantity, tokens_paid=pp.tokens_paid)
    await hooks.notify_settlement(
        "product.purchased",
        {
            "purchase_id": str(pp.id),
            "product_id": str(product.id),
            "buyer_id": buyer_id,
            "quantity": quantity,
            "tokens_paid": pp.tokens_paid,
        },
    )
    return pp


async def list_product_purchases(buyer_id: str | None = None, limit: int = 50, offset: int = 0) -> list[ProductPurchase]:
    query = ProductPurchase.find(ProductPurchase.buyer_id == buyer_id) if buyer_id else ProductPurchase.find()
    return await query.sort("-created_at", "-_id").skip(offset).limit(limit).to_list()


async def recover_product_purchase(pp: ProductPurchase) -> str:
    """Resolve a stale pending product purchase from the state of its transaction."""
    tx = await ledger_store.find_by_idempotency_key(ledger.idempotency_key(ECOSYSTEM_PURCHASE, str(pp.id)))
    if tx is None:
        # Hold the reference first so an in-flight settle cannot charge after the refund.
        tx = await ledger.void_reference(
            ECOSYSTEM_PURCHASE,
            str(pp.id),
            pp.tokens_paid,
            from_account=pp.buyer_id,
            to_account=pp.seller_id,
            reason="stale_pending",
        )
    if tx is not None and tx.status == COMPLETED:
        await _resolve(pp, product_model.PURCHASE_COMPLETED, transaction_id=str(tx.id))
        return product_model.PURCHASE_COMPLETED
    if tx is not None and tx.status == PENDING:
        return product_model.PURCHASE_PENDING
    if await _resolve(pp, product_model.PURCHASE_REFUNDED):
        product = await Product.get(pp.product_id)
        if product is not None:
            await _return_stock(product, pp.quantity)
    return product_model.PURCHASE_REFUNDED
