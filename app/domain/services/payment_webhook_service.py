"""
Payment Webhook Service - inbound provider notifications.

Authenticates a provider webhook with the tenant's credentials, maps it onto
the internal event vocabulary and applies it to the ledger through the same
idempotent upsert the synchronous path uses. Duplicate deliveries are
harmless: the second write finds the row already settled.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ProviderNotConfiguredError, WebhookAuthenticationError
from app.core.logging import get_logger, set_tenant_id
from app.db.models.transaction import TransactionStatus, TransactionType
from app.domain.services.ledger_service import LedgerEntry, LedgerService
from app.domain.services.payments import (
    InboundWebhook,
    NormalizedWebhookEvent,
    WebhookEventKind,
    create_adapter,
    parse_provider,
)
from app.domain.services.payments.base_adapter import void_external_id

logger = get_logger(__name__)

PAYMENT_RECEIVED_EVENT = "payment.received"

# kind -> (ledger status, ledger row type)
_LEDGER_MAPPING: dict[WebhookEventKind, tuple[TransactionStatus, TransactionType]] = {
    WebhookEventKind.PAYMENT_SUCCEEDED: (TransactionStatus.SUCCEEDED, TransactionType.PAYMENT),
    WebhookEventKind.PAYMENT_FAILED: (TransactionStatus.FAILED, TransactionType.PAYMENT),
    WebhookEventKind.REFUND_COMPLETED: (TransactionStatus.REFUNDED, TransactionType.REFUND),
    WebhookEventKind.VOID_COMPLETED: (TransactionStatus.SUCCEEDED, TransactionType.VOID),
}


def webhook_url(provider: str, tenant_id: str) -> str:
    """Public URL a tenant registers with the provider's dashboard"""
    return f"{settings.PUBLIC_BASE_URL}/api/v1/webhooks/{provider}/{tenant_id}"


@dataclass
class WebhookReceipt:
    """Outcome of one inbound notification"""
    handled: bool
    provider: str
    event_type: str | None = None
    kind: str | None = None
    external_id: str | None = None
    created: bool = False
    status_changed: bool = False

    def to_response(self) -> dict[str, Any]:
        return {"received": True, "handled": self.handled}


class PaymentWebhookService:
    """Service for authenticating and applying provider webhooks"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def receive(
        self,
        provider: str,
        tenant_id: str,
        body: bytes,
        headers: Mapping[str, str],
    ) -> WebhookReceipt:
        """
        Process one inbound webhook.

        Raises:
            WebhookAuthenticationError: signature did not verify; nothing was applied.
        """
        provider_enum = parse_provider(provider)
        provider_name = provider_enum.value
        set_tenant_id(tenant_id)
        adapter = create_adapter(provider_enum, self.db, tenant_id)

        try:
            config = await adapter.load_config(required=adapter.webhook_credentials)
        except ProviderNotConfiguredError as e:
            logger.warning(
                "Webhook for tenant without usable provider settings",
                extra_data={
                    "provider": provider_name,
                    "tenant_id": tenant_id,
                    "missing": e.details.get("missing"),
                },
            )
            return WebhookReceipt(handled=False, provider=provider_name)

        request = InboundWebhook(
            body=body,
            headers=headers,
            url=webhook_url(provider_name, tenant_id),
        )
        try:
            payload = await adapter.verify_webhook(request, config)
        except WebhookAuthenticationError as e:
            logger.warning(
                "Webhook authentication failed",
                extra_data={
                    "security_event": "webhook_auth_failed",
                    "provider": provider_name,
                    "tenant_id": tenant_id,
                    "reason": e.reason,
                },
            )
            raise

        event = adapter.parse_webhook_event(payload, config)
        if event.kind == WebhookEventKind.UNRECOGNIZED:
            logger.info(
                "Unhandled payment webhook event",
                extra_data={
                    "provider": provider_name,
                    "tenant_id": tenant_id,
                    "event_type": event.provider_event_type,
                },
            )
            return WebhookReceipt(
                handled=False,
                provider=provider_name,
                event_type=event.provider_event_type,
                kind=event.kind.value,
            )

        return await self._apply(provider_enum, tenant_id, event)

    async def _apply(self, provider, tenant_id: str, event: NormalizedWebhookEvent) -> WebhookReceipt:
        status, transaction_type = _LEDGER_MAPPING[event.kind]
        external_id = event.external_id
        if event.kind == WebhookEventKind.VOID_COMPLETED:
            external_id = void_external_id(external_id)

        entry = LedgerEntry(
            tenant_id=tenant_id,
            provider=provider,
            external_id=external_id,
            amount=event.amount or 0,
            currency=event.currency or "USD",
            status=status,
            type=transaction_type,
            customer_email=event.customer_email,
            metadata={
                "source": "webhook",
                "event_type": event.provider_event_type,
                **{k: v for k, v in event.metadata.items() if v is not None},
            },
        )

        try:
            write = await LedgerService(self.db).record(entry)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.error(
                "Failed to apply payment webhook to ledger",
                extra_data={
                    "provider": provider.value,
                    "tenant_id": tenant_id,
                    "external_id": external_id,
                    "event_type": event.provider_event_type,
                },
                exc_info=True,
            )
            raise

        transaction = write.transaction
        logger.info(
            "Payment webhook applied",
            extra_data={
                "provider": provider.value,
                "tenant_id": tenant_id,
                "external_id": external_id,
                "event_type": event.provider_event_type,
                "created": write.created,
                "status_changed": write.status_changed,
                "status": transaction.status.value,
            },
        )

        if write.newly_succeeded and transaction.type in (
            TransactionType.PAYMENT, TransactionType.CAPTURE
        ):
            self._enqueue_payment_received(tenant_id, transaction)

        return WebhookReceipt(
            handled=True,
            provider=provider.value,
            event_type=event.provider_event_type,
            kind=event.kind.value,
            external_id=external_id,
            created=write.created,
            status_changed=write.status_changed,
        )

    def _enqueue_payment_received(self, tenant_id: str, transaction) -> None:
        """Hand the outbound payment.received event to the worker; never fails the webhook"""
        # imported here: the worker module imports the service layer
        from app.workers.tasks import dispatch_webhook_event

        data = {
            "transaction_id": transaction.id,
            "external_id": transaction.external_id,
            "provider": transaction.provider.value,
            "amount": transaction.amount,
            "currency": transaction.currency,
            "customer_email": transaction.customer_email,
        }
        try:
            dispatch_webhook_event.delay(tenant_id, PAYMENT_RECEIVED_EVENT, data)
        except Exception as e:
            logger.error(
                "Failed to enqueue payment.received event",
                extra_data={
                    "tenant_id": tenant_id,
                    "external_id": transaction.external_id,
                    "error": str(e),
                },
                exc_info=True,
            )
