from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from zaryo.core.identity import Identity
from zaryo.deps import get_identity, require_admin
from zaryo.models.redemption_request import RedemptionRequest
from zaryo.services import redemptions as redemptions_service

router = APIRouter()


class RedemptionCreate(BaseModel):
    name: str = ""
    token_count: int = Field(gt=0)
    payment_method: str
    account_username: str
    phone_number: str


class ReviewRequest(BaseModel):
    notes: str | None = None


def redemption_out(r: RedemptionRequest) -> dict:
    return {
        "id": str(r.id),
        "user_id": r.user_id,
        "name": r.name,
        "token_count": r.token_count,
        "payment_method": r.payment_method,
        "account_username": r.account_username,
        "phone_number": r.phone_number,
        "status": r.status,
        "notes": r.notes,
        "transaction_id": r.transaction_id,
        "completed_by": r.completed_by,
        "completed_at": r.completed_at.isoformat() if r.completed_at else None,
        "created_at": r.created_at.isoformat(),
    }


@router.post("")
async def redemption_create(body: RedemptionCreate, identity: Identity = Depends(get_identity)):
    """File a request to cash out tokens; an admin reviews it."""
    r = await redemptions_service.create_request(
        identity,
        body.token_count,
        body.payment_method,
        body.account_username,
        body.phone_number,
        name=body.name,
    )
    return redemption_out(r)


@router.get("")
async def redemptions_mine(identity: Identity = Depends(get_identity)):
    items = await redemptions_service.list_requests(user_id=identity.user_id)
    return {"requests": [redemption_out(r) for r in items]}


@router.get("/all")
async def redemptions_all(status: str | None = None, admin: Identity = Depends(require_admin)):
    """Admin: every request, optionally filtered by status."""
    items = await redemptions_service.list_requests(status=status)
    return {"requests": [redemption_out(r) for r in items]}


@router.post("/{request_id}/approve")
async def redemption_approve(request_id: str, body: ReviewRequest, admin: Identity = Depends(require_admin)):
    return redemption_out(await redemptions_service.approve_request(admin, request_id, body.notes))


@router.post("/{request_id}/reject")
async def redemption_reject(request_id: str, body: ReviewRequest, admin: Identity = Depends(require_admin)):
    return redemption_out(await redemptions_service.reject_request(admin, request_id, body.notes))


@router.post("/{request_id}/complete")
async def redemption_complete(request_id: str, body: ReviewRequest, admin: Identity = Depends(require_admin)):
    """Admin: pay out and debit the tokens (idempotent)."""
    return redemption_out(await redemptions_service.complete_request(admin, request_id, body.notes))
