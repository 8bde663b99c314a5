from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from zaryo.core.exceptions import ForbiddenError
from zaryo.core.identity import Identity
from zaryo.deps import get_identity
from zaryo.models.purchase import Purchase
from zaryo.services import settlement

router = APIRouter()


class PurchaseRequest(BaseModel):
    buyer_id: str
    content_id: str


def purchase_out(p: Purchase) -> dict:
    return {
        "id": str(p.id),
        "content_id": str(p.content_id),
        "seller_id": p.seller_id,
        "buyer_id": p.buyer_id,
        "tokens_paid": p.tokens_paid,
        "status": p.status,
        "transaction_id": p.transaction_id,
        "created_at": p.created_at.isoformat(),
        "completed_at": p.completed_at.isoformat() if p.completed_at else None,
    }


@router.post("")
async def purchase_create(body: PurchaseRequest, identity: Identity = Depends(get_identity)):
    """Buy a content item with tokens. buyer_id must be the signed-in caller."""
    if body.buyer_id != identity.user_id:
        raise ForbiddenError("buyer_id does not match the authenticated user")
    purchase = await settlement.purchase_content(identity.user_id, body.content_id)
    return purchase_out(purchase)


@router.get("")
async def purchases_list(
    identity: Identity = Depends(get_identity),
    role: str = Query("buyer", pattern="^(buyer|seller)$"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Caller's purchases as buyer (default) or sales as seller."""
    if role == "seller":
        items = await settlement.list_purchases(seller_id=identity.user_id, limit=limit, offset=offset)
    else:
        items = await settlement.list_purchases(buyer_id=identity.user_id, limit=limit, offset=offset)
    return {"purchases": [purchase_out(p) for p in items], "limit": limit, "offset": offset}
