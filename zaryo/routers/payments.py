from fastapi import APIRouter, Header, Request

from zaryo.services import payments as payments_service

router = APIRouter()


@router.post("/webhook")
async def payments_webhook(request: Request, x_signature: str = Header(..., alias="X-Signature")):
    """Gateway webhook: funds.received -> issue tokens (idempotent); subscription.updated -> sync period."""
    body = await request.body()
    event = await payments_service.handle_webhook(body, x_signature)
    return {"status": "ok", "event": event}
