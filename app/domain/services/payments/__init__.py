"""
Payment gateway abstraction layer

One adapter per gateway behind a common interface, so business code can
move money without knowing which gateway a tenant uses.
"""
from app.domain.services.payments.base_adapter import (
    AdapterResult,
    BasePaymentAdapter,
    ConnectionStatus,
    InboundWebhook,
    NormalizedWebhookEvent,
    PaymentStatus,
    WebhookEventKind,
)
from app.domain.services.payments.provider_factory import create_adapter, parse_provider

__all__ = [
    "AdapterResult",
    "BasePaymentAdapter",
    "ConnectionStatus",
    "InboundWebhook",
    "NormalizedWebhookEvent",
    "PaymentStatus",
    "WebhookEventKind",
    "create_adapter",
    "parse_provider",
]
