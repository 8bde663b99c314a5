import os
from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# Use test DB
os.environ.setdefault("MONGODB_DB_NAME", "zaryo_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("PAYMENTS_WEBHOOK_SECRET", "test-webhook-secret")


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database bound to every document model."""
    from zaryo.db.init import init_db
    database = AsyncMongoMockClient()["zaryo_test"]
    await init_db(database)
    yield database


@pytest_asyncio.fixture
async def client(db) -> AsyncGenerator[AsyncClient, None]:
    from zaryo.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def auth() -> Callable[..., dict]:
    """Build request headers carrying a signed session for user_id/role."""
    from zaryo.core.security import create_session_token

    def _headers(user_id: str, role: str = "creator") -> dict:
        token = create_session_token({"user_id": user_id, "role": role})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def fund():
    """Issue tokens to a user through the engine."""
    from zaryo.models.ledger_transaction import ISSUANCE
    from zaryo.services import ledger

    async def _fund(user_id: str, amount: int):
        return await ledger.settle(ISSUANCE, amount, to_account=user_id)

    return _fund


@pytest.fixture
def make_content():
    """Insert a listing directly (bypasses the upload entitlement check)."""
    from zaryo.models.content_item import ContentItem

    async def _make(owner_id: str, price_tokens: int, title: str = "Clip", status: str = "active"):
        item = ContentItem(owner_id=owner_id, title=title, price_tokens=price_tokens, status=status)
        await item.insert()
        return item

    return _make
