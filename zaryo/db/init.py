import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from zaryo.core.config import get_settings
from zaryo.models.account import Account
from zaryo.models.audit_log import AuditLog
from zaryo.models.content_item import ContentItem
from zaryo.models.failed_job import FailedJob
from zaryo.models.ledger_transaction import LedgerTransaction
from zaryo.models.product import Product, ProductPurchase
from zaryo.models.purchase import Purchase
from zaryo.models.redemption_request import RedemptionRequest
from zaryo.models.subscription_period import SubscriptionPeriod

DOCUMENT_MODELS = [
    Account,
    LedgerTransaction,
    ContentItem,
    Purchase,
    SubscriptionPeriod,
    Product,
    ProductPurchase,
    RedemptionRequest,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(database=None) -> None:
    """Bind document models. Pass `database` to reuse an existing (or in-memory) database handle."""
    if database is None:
        settings = get_settings()
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
        database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
