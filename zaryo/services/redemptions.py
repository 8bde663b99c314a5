"""Token redemption requests: filed by users, reviewed and paid out by admins."""

from datetime import datetime

from beanie import PydanticObjectId

from zaryo.core.audit import log_event
from zaryo.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from zaryo.core.identity import Identity
from zaryo.core.logging import get_logger
from zaryo.models import redemption_request as rr
from zaryo.models.ledger_transaction import REDEMPTION
from zaryo.models.redemption_request import RedemptionRequest
from zaryo.services import hooks, ledger, ledger_store
from zaryo.services.settlement import parse_object_id

log = get_logger(__name__)


async def create_request(
    identity: Identity,
    token_count: int,
    payment_method: str,
    account_username: str,
    phone_number: str,
    name: str = "",
) -> RedemptionRequest:
    if isinstance(token_count, bool) or not isinstance(token_count, int) or token_count <= 0:
        raise ValidationError("token_count must be a positive whole number")
    for field, value in (
        ("payment_method", payment_method),
        ("account_username", account_username),
        ("phone_number", phone_number),
    ):
        if not (value or "").strip():
            raise BadRequestError(f"{field} is required")
    available = await ledger_store.get_balance_or_zero(identity.user_id)
    if token_count > available:
        raise InsufficientFundsError(details={"required": token_count, "available": available})
    req = RedemptionRequest(
        user_id=identity.user_id,
        name=name,
        token_count=token_count,
        payment_method=payment_method.strip(),
        account_username=account_username.strip(),
        phone_number=phone_number.strip(),
    )
    await req.insert()
    log.info("redemption_requested", request_id=str(req.id), user_id=identity.user_id, token_count=token_count)
    return req


async def get_request(request_id: str | PydanticObjectId) -> RedemptionRequest:
    req = await RedemptionRequest.get(parse_object_id(request_id, "request_id"))
    if not req:
        raise NotFoundError("Redemption request not found")
    return req


async def list_requests(user_id: str | None = None, status: str | None = None) -> list[RedemptionRequest]:
    query = RedemptionRequest.find()
    if user_id:
        query = query.find(RedemptionRequest.user_id == user_id)
    if status:
        query = query.find(RedemptionRequest.status == status)
    return await query.sort("-created_at", "-_id").to_list()


async def _transition(req: RedemptionRequest, allowed_from: tuple[str, ...], to: str, **fields) -> RedemptionRequest:
    now = datetime.utcnow()
    res = await RedemptionRequest.get_motor_collection().update_one(
        {"_id": req.id, "status": {"$in": list(allowed_from)}},
        {"$set": {"status": to, "updated_at": now, **fields}},
    )
    if res.modified_count != 1:
        raise ConflictError(f"Request cannot move from {req.status} to {to}")
    return await get_request(req.id)


def _require_admin(actor: Identity) -> None:
    if not actor.is_admin:
        raise ForbiddenError("Admin only")


async def approve_request(actor: Identity, request_id, notes: str | None = None) -> RedemptionRequest:
    _require_admin(actor)
    req = await get_request(request_id)
    req = await _transition(req, (rr.PENDING,), rr.APPROVED, notes=notes)
    await log_event(actor.user_id, "redemption_approved", "redemption_request", str(req.id))
    return req


async def reject_request(actor: Identity, request_id, notes: str | None = None) -> RedemptionRequest:
    _require_admin(actor)
    req = await get_request(request_id)
    req = await _transition(req, (rr.PENDING, rr.APPROVED), rr.REJECTED, notes=notes)
    await log_event(actor.user_id, "redemption_rejected", "redemption_request", str(req.id), {"notes": notes})
    return req


async def complete_request(actor: Identity, request_id, notes: str | None = None) -> RedemptionRequest:
    """
    Debit the user's tokens for the payout.
    The request is claimed as processing before the debit, so it can no longer be rejected.
    A request left in processing (outage mid-debit) is resumed by calling this again:
    the debit is keyed on the request id and is applied at most once.
    """
    _require_admin(actor)
    req = await get_request(request_id)
    if req.status == rr.COMPLETED:
        return req
    previous = req.status
    if previous != rr.PROCESSING:
        req = await _transition(req, (rr.PENDING, rr.APPROVED), rr.PROCESSING)
    try:
        tx = await ledger.settle(
            REDEMPTION,
            req.token_count,
            from_account=req.user_id,
            reference=str(req.id),
            notes=f"Token redemption completed: {req.payment_method}",
        )
    except InsufficientFundsError:
        if previous != rr.PROCESSING:
            await _transition(req, (rr.PROCESSING,), previous)
        raise
    try:
        req = await _transition(
            req,
            (rr.PROCESSING,),
            rr.COMPLETED,
            notes=notes,
            transaction_id=str(tx.id),
            completed_by=actor.user_id,
            completed_at=datetime.utcnow(),
        )
    except ConflictError:
        current = await get_request(req.id)
        if current.status == rr.COMPLETED:
            return current  # completed by a concurrent call
        raise
    log.info("redemption_completed", request_id=str(req.id), transaction_id=str(tx.id))
    await log_event(
        actor.user_id,
        "redemption_completed",
        "redemption_request",
        str(req.id),
        {"transaction_id": str(tx.id), "token_count": req.token_count},
    )
    await hooks.notify_settlement(
        "redemption.completed",
        {"request_id": str(req.id), "user_id": req.user_id, "token_count": req.token_count},
    )
    return req
