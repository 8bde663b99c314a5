"""Shared FastAPI dependencies."""

from fastapi import Request
from pydantic import ValidationError as PydanticValidationError

from zaryo.core.exceptions import ForbiddenError, UnauthorizedError
from zaryo.core.identity import Identity
from zaryo.core.logging import bind_actor
from zaryo.core.security import load_session_token

SESSION_COOKIE_NAME = "zaryo_session"


async def get_identity(request: Request) -> Identity:
    """Dependency: verify the identity provider's signed session and return the caller."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        auth = request.headers.get("Authorization", "")
        if auth.lower().startswith("bearer "):
            cookie = auth[7:].strip()
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_token(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    if not payload.get("user_id"):
        raise UnauthorizedError("Invalid session")
    try:
        identity = Identity(user_id=str(payload["user_id"]), role=payload.get("role", "creator"))
    except PydanticValidationError:
        raise UnauthorizedError("Invalid session")
    bind_actor(identity.user_id, identity.role.value)
    return identity


async def require_admin(request: Request) -> Identity:
    """Dependency: require current caller to have role admin."""
    identity = await get_identity(request)
    if not identity.is_admin:
        raise ForbiddenError("Admin only")
    return identity
