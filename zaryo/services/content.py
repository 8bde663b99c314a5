"""Content listings owned by creators and companies."""

from datetime import datetime

from beanie import PydanticObjectId

from zaryo.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from zaryo.core.identity import Identity
from zaryo.core.logging import get_logger
from zaryo.models import content_item
from zaryo.models.content_item import ContentItem
from zaryo.services.settlement import check_upload_entitlement, parse_object_id

log = get_logger(__name__)


def _check_price(price_tokens) -> int:
    if isinstance(price_tokens, bool) or not isinstance(price_tokens, int) or price_tokens < 0:
        raise ValidationError("price_tokens must be a non-negative whole number")
    return price_tokens


async def create_content(
    identity: Identity,
    title: str,
    price_tokens: int,
    description: str = "",
) -> ContentItem:
    """Upload a listing. Requires an unexpired subscription period at request time."""
    if not await check_upload_entitlement(identity.user_id):
        raise ForbiddenError("An active subscription is required to upload content")
    item = ContentItem(
        owner_id=identity.user_id,
        title=title.strip(),
        description=description,
        price_tokens=_check_price(price_tokens),
    )
    await item.insert()
    log.info("content_created", content_id=str(item.id), owner_id=item.owner_id, price_tokens=item.price_tokens)
    return item


async def get_content(content_id: str | PydanticObjectId) -> ContentItem:
    item = await ContentItem.get(parse_object_id(content_id, "content_id"))
    if not item:
        raise NotFoundError("Content not found")
    return item


async def list_marketplace(limit: int = 50, offset: int = 0) -> list[ContentItem]:
    return (
        await ContentItem.find(ContentItem.status == content_item.ACTIVE)
        .sort("-created_at", "-_id")
        .skip(offset)
        .limit(limit)
        .to_list()
    )


async def list_owned(owner_id: str, status: str | None = None) -> list[ContentItem]:
    query = ContentItem.find(ContentItem.owner_id == owner_id)
    if status:
        query = query.find(ContentItem.status == status)
    return await query.sort("-created_at", "-_id").to_list()


async def _update_listing(identity: Identity, content_id, changes: dict) -> ContentItem:
    """Apply changes only while the item is active and not reserved by a purchase."""
    item = await get_content(content_id)
    if item.owner_id != identity.user_id and not identity.is_admin:
        raise ForbiddenError("Not the content owner")
    changes["updated_at"] = datetime.utcnow()
    res = await ContentItem.get_motor_collection().update_one(
        {"_id": item.id, "status": content_item.ACTIVE, "pending_purchase_id": None},
        {"$set": changes},
    )
    if res.modified_count != 1:
        raise ConflictError("Content can only be changed while it is active and not being purchased")
    return await get_content(item.id)


async def update_content(
    identity: Identity,
    content_id,
    title: str | None = None,
    description: str | None = None,
    price_tokens: int | None = None,
) -> ContentItem:
    changes = {}
    if title is not None:
        changes["title"] = title.strip()
    if description is not None:
        changes["description"] = description
    if price_tokens is not None:
        changes["price_tokens"] = _check_price(price_tokens)
    if not changes:
        raise ValidationError("Nothing to update")
    return await _update_listing(identity, content_id, changes)


async def archive_content(identity: Identity, content_id) -> ContentItem:
    item = await _update_listing(identity, content_id, {"status": content_item.ARCHIVED})
    log.info("content_archived", content_id=str(item.id))
    return item
