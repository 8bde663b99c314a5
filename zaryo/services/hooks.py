"""Post-settlement collaborators. None of these may undo a completed transaction."""

from typing import Any

import httpx

from zaryo.core.audit import log_event
from zaryo.core.config import get_settings
from zaryo.core.logging import get_logger

log = get_logger(__name__)


async def notify_settlement(event: str, payload: dict[str, Any]) -> bool:
    """POST a settlement event to the notification webhook. Failures are logged, never raised."""
    settings = get_settings()
    if not settings.notification_webhook_url:
        log.debug("notification_skipped", event_name=event)
        return False
    try:
        async with httpx.AsyncClient(timeout=settings.notification_timeout_seconds) as client:
            resp = await client.post(
                settings.notification_webhook_url,
                json={"event": event, "data": payload},
            )
            resp.raise_for_status()
    except httpx.HTTPError as e:
        log.warning("notification_failed", event_name=event, error=str(e))
        return False
    log.info("notification_sent", event_name=event)
    return True


async def transfer_ownership(content_id: str, seller_id: str, buyer_id: str, purchase_id: str) -> None:
    """Record the ownership handover of a sold content item."""
    try:
        await log_event(
            buyer_id,
            "content_ownership_transferred",
            "content",
            content_id,
            {"seller_id": seller_id, "buyer_id": buyer_id, "purchase_id": purchase_id},
        )
    except Exception as e:
        log.warning("ownership_transfer_record_failed", content_id=content_id, error=str(e))
