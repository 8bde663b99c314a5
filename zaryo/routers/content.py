from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from zaryo.core.identity import Identity
from zaryo.deps import get_identity
from zaryo.models.content_item import ContentItem
from zaryo.services import content as content_service

router = APIRouter()


class ContentCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    price_tokens: int = Field(ge=0)


class ContentUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    price_tokens: int | None = Field(default=None, ge=0)


def content_out(item: ContentItem) -> dict:
    return {
        "id": str(item.id),
        "owner_id": item.owner_id,
        "title": item.title,
        "description": item.description,
        "price_tokens": item.price_tokens,
        "status": item.status,
        "sold_to": item.sold_to,
        "sold_at": item.sold_at.isoformat() if item.sold_at else None,
        "created_at": item.created_at.isoformat(),
    }


@router.post("")
async def content_create(body: ContentCreate, identity: Identity = Depends(get_identity)):
    """Upload a listing (requires an active subscription period)."""
    item = await content_service.create_content(identity, body.title, body.price_tokens, body.description)
    return content_out(item)


@router.get("")
async def content_marketplace(
    identity: Identity = Depends(get_identity),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Active listings, newest first."""
    items = await content_service.list_marketplace(limit=limit, offset=offset)
    return {"items": [content_out(i) for i in items], "limit": limit, "offset": offset}


@router.get("/mine")
async def content_mine(identity: Identity = Depends(get_identity), status: str | None = None):
    items = await content_service.list_owned(identity.user_id, status=status)
    return {"items": [content_out(i) for i in items]}


@router.get("/{content_id}")
async def content_get(content_id: str, identity: Identity = Depends(get_identity)):
    return content_out(await content_service.get_content(content_id))


@router.patch("/{content_id}")
async def content_update(content_id: str, body: ContentUpdate, identity: Identity = Depends(get_identity)):
    """Edit title/description/price while the item is still active."""
    item = await content_service.update_content(
        identity,
        content_id,
        title=body.title,
        description=body.description,
        price_tokens=body.price_tokens,
    )
    return content_out(item)


@router.post("/{content_id}/archive")
async def content_archive(content_id: str, identity: Identity = Depends(get_identity)):
    return content_out(await content_service.archive_content(identity, content_id))
