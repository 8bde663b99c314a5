from fastapi import APIRouter, Depends

from zaryo.core.identity import Identity
from zaryo.deps import get_identity
from zaryo.services import settlement

router = APIRouter()


@router.get("/me")
async def subscription_me(identity: Identity = Depends(get_identity)):
    """Current period and whether uploads are allowed right now."""
    sub = await settlement.get_subscription(identity.user_id)
    return {
        "subscription": {
            "status": sub.status,
            "current_period_end": sub.current_period_end.isoformat(),
        } if sub else None,
        "can_upload": await settlement.check_upload_entitlement(identity.user_id),
    }
