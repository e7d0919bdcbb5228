"""
Database Models
"""
from app.db.models.transaction import (
    PaymentProvider,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from app.db.models.payment_settings import PaymentSettings
from app.db.models.webhook_registration import WebhookRegistration
from app.db.models.webhook_delivery import WebhookDelivery

__all__ = [
    "PaymentProvider",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "PaymentSettings",
    "WebhookRegistration",
    "WebhookDelivery",
]
