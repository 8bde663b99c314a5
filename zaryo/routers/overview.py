from fastapi import APIRouter, Depends

from zaryo.core.identity import Identity
from zaryo.deps import get_identity
from zaryo.services import overview as overview_service

router = APIRouter()


@router.get("")
async def overview(identity: Identity = Depends(get_identity)):
    """Role-specific dashboard figures."""
    return await overview_service.build_overview(identity)
