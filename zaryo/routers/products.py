from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from zaryo.core.identity import Identity
from zaryo.deps import get_identity, require_admin
from zaryo.models.product import UNLIMITED_STOCK, Product, ProductPurchase
from zaryo.services import products as products_service

router = APIRouter()


class ProductCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    category: str | None = None
    price_tokens: int = Field(gt=0)
    stock_quantity: int = Field(default=UNLIMITED_STOCK, ge=UNLIMITED_STOCK)


class ProductPurchaseRequest(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)


def product_out(p: Product) -> dict:
    return {
        "id": str(p.id),
        "seller_id": p.seller_id,
        "title": p.title,
        "description": p.description,
        "category": p.category,
        "price_tokens": p.price_tokens,
        "stock_quantity": p.stock_quantity,
        "status": p.status,
    }


def product_purchase_out(pp: ProductPurchase) -> dict:
    return {
        "id": str(pp.id),
        "product_id": str(pp.product_id),
        "buyer_id": pp.buyer_id,
        "seller_id": pp.seller_id,
        "quantity": pp.quantity,
        "tokens_paid": pp.tokens_paid,
        "status": pp.status,
        "transaction_id": pp.transaction_id,
        "created_at": pp.created_at.isoformat(),
    }


@router.get("")
async def products_list(identity: Identity = Depends(get_identity)):
    items = await products_service.list_products(include_inactive=identity.is_admin)
    return {"products": [product_out(p) for p in items]}


@router.post("")
async def product_create(body: ProductCreate, admin: Identity = Depends(require_admin)):
    """Admin: list a product in the ecosystem store."""
    p = await products_service.create_product(
        admin,
        body.title,
        body.price_tokens,
        description=body.description,
        category=body.category,
        stock_quantity=body.stock_quantity,
    )
    return product_out(p)


@router.post("/{product_id}/archive")
async def product_archive(product_id: str, admin: Identity = Depends(require_admin)):
    return product_out(await products_service.archive_product(admin, product_id))


@router.post("/purchase")
async def product_purchase(body: ProductPurchaseRequest, identity: Identity = Depends(get_identity)):
    pp = await products_service.purchase_product(identity.user_id, body.product_id, body.quantity)
    return {"success": True, "purchase": product_purchase_out(pp)}


@router.get("/purchases")
async def product_purchases(
    identity: Identity = Depends(get_identity),
    scope: str = Query("mine", pattern="^(mine|all)$"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Caller's product purchases; admins may pass scope=all."""
    buyer_id = None if scope == "all" and identity.is_admin else identity.user_id
    items = await products_service.list_product_purchases(buyer_id, limit=limit, offset=offset)
    return {"purchases": [product_purchase_out(pp) for pp in items], "limit": limit, "offset": offset}
