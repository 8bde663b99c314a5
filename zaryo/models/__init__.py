from zaryo.models.account import Account
from zaryo.models.audit_log import AuditLog
from zaryo.models.content_item import ContentItem
from zaryo.models.failed_job import FailedJob
from zaryo.models.ledger_transaction import LedgerTransaction
from zaryo.models.product import Product, ProductPurchase
from zaryo.models.purchase import Purchase
from zaryo.models.redemption_request import RedemptionRequest
from zaryo.models.subscription_period import SubscriptionPeriod

__all__ = [
    "Account",
    "AuditLog",
    "ContentItem",
    "FailedJob",
    "LedgerTransaction",
    "Product",
    "ProductPurchase",
    "Purchase",
    "RedemptionRequest",
    "SubscriptionPeriod",
]
