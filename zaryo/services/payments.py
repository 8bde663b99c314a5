"""Payment gateway webhook: token top-ups and subscription period sync."""

import json
from datetime import datetime

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from zaryo.core.audit import log_event
from zaryo.core.config import get_settings
from zaryo.core.exceptions import BadRequestError
from zaryo.core.logging import get_logger
from zaryo.core.security import verify_webhook_signature
from zaryo.models import subscription_period
from zaryo.models.ledger_transaction import ISSUANCE, LedgerTransaction
from zaryo.models.subscription_period import SubscriptionPeriod
from zaryo.services import ledger
from zaryo.services.settlement import utc_naive

log = get_logger(__name__)

FUNDS_RECEIVED = "funds.received"
SUBSCRIPTION_UPDATED = "subscription.updated"


class FundsReceived(BaseModel):
    payment_id: str
    user_id: str
    amount_cents: int


class SubscriptionUpdated(BaseModel):
    user_id: str
    current_period_end: datetime
    status: str = subscription_period.ACTIVE


def tokens_for_amount(amount_cents: int) -> int:
    """Bundle table first, then the flat per-dollar rate."""
    settings = get_settings()
    if amount_cents in settings.token_packs:
        return settings.token_packs[amount_cents]
    return amount_cents * settings.tokens_per_dollar // 100


async def credit_funds(event: FundsReceived) -> LedgerTransaction | None:
    """Issue tokens for a captured payment. Redelivery of the same payment_id is a no-op."""
    tokens = tokens_for_amount(event.amount_cents)
    if tokens <= 0:
        log.info("funds_ignored", payment_id=event.payment_id, amount_cents=event.amount_cents)
        return None
    tx = await ledger.settle(
        ISSUANCE,
        tokens,
        to_account=event.user_id,
        reference=f"payment:{event.payment_id}",
        notes=f"Purchased {tokens} Zaryo",
    )
    log.info("funds_credited", payment_id=event.payment_id, user_id=event.user_id, tokens=tokens)
    await log_event(
        None,
        "payment_captured",
        "payment",
        event.payment_id,
        {"amount_cents": event.amount_cents, "tokens": tokens, "transaction_id": str(tx.id)},
    )
    return tx


async def sync_subscription(event: SubscriptionUpdated) -> SubscriptionPeriod:
    if event.status not in subscription_period.STATUSES:
        raise BadRequestError(f"Invalid subscription status: {event.status}")
    period_end = utc_naive(event.current_period_end)
    sub = await SubscriptionPeriod.find_one(SubscriptionPeriod.user_id == event.user_id)
    if sub is None:
        sub = SubscriptionPeriod(user_id=event.user_id, current_period_end=period_end, status=event.status)
        await sub.insert()
    else:
        sub.current_period_end = period_end
        sub.status = event.status
        sub.updated_at = datetime.utcnow()
        await sub.save()
    log.info("subscription_synced", user_id=event.user_id, status=event.status, current_period_end=period_end.isoformat())
    return sub


async def handle_webhook(payload: bytes, signature: str) -> str:
    """Verify HMAC, then dispatch on event type. Returns the handled event name ("ignored" otherwise)."""
    settings = get_settings()
    if not settings.payments_webhook_secret:
        raise BadRequestError("Webhook secret not configured")
    if not verify_webhook_signature(payload, signature, settings.payments_webhook_secret):
        raise BadRequestError("Invalid webhook signature")
    try:
        data = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise BadRequestError("Malformed webhook body")
    event = data.get("event")
    body = data.get("data") or {}
    try:
        if event == FUNDS_RECEIVED:
            await credit_funds(FundsReceived(**body))
        elif event == SUBSCRIPTION_UPDATED:
            await sync_subscription(SubscriptionUpdated(**body))
        else:
            log.info("webhook_ignored", event_name=event)
            return "ignored"
    except PydanticValidationError as e:
        raise BadRequestError("Malformed webhook event", details={"errors": e.errors(include_url=False, include_context=False)})
    return event
