"""Dashboard overview, one builder per role."""

from typing import Any, Awaitable, Callable

from zaryo.core.identity import Identity, Role
from zaryo.models import content_item, redemption_request
from zaryo.models.account import Account
from zaryo.models.content_item import ContentItem
from zaryo.models.ledger_transaction import PENDING, LedgerTransaction
from zaryo.models.purchase import Purchase
from zaryo.models.redemption_request import RedemptionRequest
from zaryo.services import ledger_store
from zaryo.services.settlement import check_upload_entitlement, get_subscription


async def _creator_overview(identity: Identity) -> dict[str, Any]:
    wallet = await ledger_store.wallet_summary(identity.user_id)
    counts = {}
    for status in (content_item.ACTIVE, content_item.SOLD, content_item.ARCHIVED):
        counts[status] = await ContentItem.find(
            ContentItem.owner_id == identity.user_id,
            ContentItem.status == status,
        ).count()
    return {
        "wallet": wallet,
        "content": counts,
        "sales_count": await Purchase.find(
            Purchase.seller_id == identity.user_id,
            Purchase.status == "completed",
        ).count(),
        "can_upload": await check_upload_entitlement(identity.user_id),
    }


async def _company_overview(identity: Identity) -> dict[str, Any]:
    sub = await get_subscription(identity.user_id)
    return {
        "wallet": await ledger_store.wallet_summary(identity.user_id),
        "purchase_count": await Purchase.find(
            Purchase.buyer_id == identity.user_id,
            Purchase.status == "completed",
        ).count(),
        "subscription": {
            "status": sub.status,
            "current_period_end": sub.current_period_end.isoformat(),
        } if sub else None,
        "can_upload": await check_upload_entitlement(identity.user_id),
    }


async def _admin_overview(identity: Identity) -> dict[str, Any]:
    supply = await Account.find_all().sum(Account.balance)
    return {
        "account_count": await Account.find_all().count(),
        "token_supply": int(supply or 0),
        "pending_redemptions": await RedemptionRequest.find(
            RedemptionRequest.status == redemption_request.PENDING
        ).count(),
        "pending_transactions": await LedgerTransaction.find(LedgerTransaction.status == PENDING).count(),
        "active_content": await ContentItem.find(ContentItem.status == content_item.ACTIVE).count(),
    }


OVERVIEW_BUILDERS: dict[Role, Callable[[Identity], Awaitable[dict[str, Any]]]] = {
    Role.CREATOR: _creator_overview,
    Role.COMPANY: _company_overview,
    Role.ADMIN: _admin_overview,
}


async def build_overview(identity: Identity) -> dict[str, Any]:
    data = await OVERVIEW_BUILDERS[identity.role](identity)
    return {"role": identity.role.value, **data}
