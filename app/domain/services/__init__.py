"""
Domain Services
"""
from app.domain.services.ledger_service import LedgerService
from app.domain.services.payment_webhook_service import PaymentWebhookService
from app.domain.services.webhook_dispatcher_service import WebhookDispatcherService

__all__ = [
    "LedgerService",
    "PaymentWebhookService",
    "WebhookDispatcherService",
]
