"""
Stripe adapter - PaymentIntents through the official stripe SDK.

Amounts are native minor units. The SDK is synchronous, so calls run in a
worker thread. The secret key is passed per request (api_key=...) instead of
being set globally, so tenants never share a configured client.

Webhooks: `Stripe-Signature` header, verified with the tenant's
`webhook_secret` by stripe.Webhook.construct_event.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable

import stripe

from app.core.config import settings
from app.core.exceptions import (
    ProviderDeclinedError,
    ProviderError,
    ProviderUnavailableError,
    WebhookAuthenticationError,
    WebhookPayloadError,
)
from app.core.logging import get_logger
from app.core.money import normalize_currency
from app.db.models.transaction import PaymentProvider, TransactionStatus, TransactionType
from app.domain.services.payments.base_adapter import (
    AdapterResult,
    BasePaymentAdapter,
    ConnectionStatus,
    InboundWebhook,
    NormalizedWebhookEvent,
    PaymentStatus,
    ProviderConfig,
    WebhookEventKind,
    header,
    void_external_id,
)

logger = get_logger(__name__)

_INTENT_STATUS = {
    "succeeded": PaymentStatus.SUCCEEDED,
    "processing": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.AUTHORIZED,
    "requires_action": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_payment_method": PaymentStatus.FAILED,
    "canceled": PaymentStatus.VOIDED,
}

# intent states in which money has moved or is settling
_MONEY_MOVED = ("succeeded", "processing")

_REFUND_STATUS = {
    "succeeded": PaymentStatus.REFUNDED,
    "pending": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "failed": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
}


def _as_dict(obj: Any) -> dict[str, Any]:
    """SDK responses are StripeObjects, not dicts; map them as plain data"""
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return dict(obj)


class StripeAdapter(BasePaymentAdapter):
    provider = PaymentProvider.STRIPE
    required_credentials = ("secret_key",)
    webhook_credentials = ("webhook_secret",)

    async def _stripe(self, func: Callable, *args, **kwargs) -> Any:
        """Run an SDK call in a thread, translating stripe errors to ours"""

        async def _run():
            try:
                return await asyncio.to_thread(func, *args, **kwargs)
            except stripe.CardError as e:
                raise ProviderDeclinedError(
                    "stripe", e.user_message or str(e), details={"code": e.code}
                ) from e
            except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
                raise ProviderUnavailableError("stripe", e.user_message or str(e)) from e
            except stripe.StripeError as e:
                raise ProviderError(
                    "stripe", e.user_message or str(e), details={"code": e.code}
                ) from e

        return await self._call(_run)

    def _intent_result(self, intent: Any) -> AdapterResult:
        currency = normalize_currency(intent.get("currency"))
        return AdapterResult(
            transaction_id=intent["id"],
            status=_INTENT_STATUS.get(intent.get("status"), PaymentStatus.PENDING),
            amount=intent.get("amount"),
            currency=currency,
            metadata={"stripe_status": intent.get("status")},
        )

    async def _create_intent(
        self, amount: int, currency: str, options: dict[str, Any], capture_method: str
    ) -> Any:
        config = await self.load_config()
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "capture_method": capture_method,
            "metadata": {"tenant_id": self.tenant_id, **(options.get("metadata") or {})},
            "api_key": config.credentials["secret_key"],
        }
        if options.get("description"):
            params["description"] = options["description"]
        if options.get("customer_email"):
            params["receipt_email"] = options["customer_email"]
        if options.get("customer_id"):
            params["customer"] = options["customer_id"]
        if options.get("idempotency_key"):
            params["idempotency_key"] = options["idempotency_key"]

        source = options.get("source")
        if source:
            params.update(
                payment_method=source,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            )
        else:
            params["automatic_payment_methods"] = {"enabled": True}

        return _as_dict(await self._stripe(stripe.PaymentIntent.create, **params))

    async def charge(self, amount: int, currency: str, options: dict[str, Any]) -> AdapterResult:
        intent = await self._create_intent(amount, currency, options, "automatic")
        result = self._intent_result(intent)

        if not options.get("source"):
            # confirmed client-side; the ledger row arrives with payment_intent.succeeded
            result.status = PaymentStatus.PENDING
            result.metadata["client_secret"] = intent.get("client_secret")
            return result

        if intent.get("status") in _MONEY_MOVED:
            await self._record(
                external_id=intent["id"],
                amount=intent.get("amount_received") or intent["amount"],
                currency=result.currency,
                status=(
                    TransactionStatus.SUCCEEDED
                    if result.status == PaymentStatus.SUCCEEDED
                    else TransactionStatus.PENDING
                ),
                transaction_type=TransactionType.PAYMENT,
                customer_email=options.get("customer_email"),
                metadata=dict(options.get("metadata") or {}),
            )
        elif result.status == PaymentStatus.PENDING:
            # 3-D Secure or similar; the buyer finishes it with the client secret
            result.metadata["client_secret"] = intent.get("client_secret")
            result.metadata["next_action"] = intent.get("next_action")
        return result

    async def authorize_only(
        self, amount: int, currency: str, options: dict[str, Any]
    ) -> AdapterResult:
        intent = await self._create_intent(amount, currency, options, "manual")
        result = self._intent_result(intent)
        if not options.get("source"):
            result.status = PaymentStatus.PENDING
            result.metadata["client_secret"] = intent.get("client_secret")
        return result

    async def capture(
        self,
        transaction_id: str,
        amount: int | None,
        currency: str,
        options: dict[str, Any],
    ) -> AdapterResult:
        config = await self.load_config()
        params: dict[str, Any] = {"api_key": config.credentials["secret_key"]}
        if amount is not None:
            params["amount_to_capture"] = amount
        intent = _as_dict(await self._stripe(stripe.PaymentIntent.capture, transaction_id, **params))
        result = self._intent_result(intent)
        if result.status == PaymentStatus.SUCCEEDED:
            captured = intent.get("amount_received") or intent["amount"]
            result.amount = captured
            await self._record(
                external_id=intent["id"],
                amount=captured,
                currency=result.currency,
                status=TransactionStatus.SUCCEEDED,
                transaction_type=TransactionType.CAPTURE,
                customer_email=intent.get("receipt_email"),
                metadata=dict(intent.get("metadata") or {}),
            )
        return result

    async def refund(
        self,
        transaction_id: str,
        amount: int | None,
        currency: str,
        options: dict[str, Any],
    ) -> AdapterResult:
        config = await self.load_config()
        params: dict[str, Any] = {
            "payment_intent": transaction_id,
            "api_key": config.credentials["secret_key"],
        }
        if amount is not None:
            params["amount"] = amount
        if options.get("reason"):
            params["reason"] = options["reason"]
        if options.get("idempotency_key"):
            params["idempotency_key"] = options["idempotency_key"]

        refund = _as_dict(await self._stripe(stripe.Refund.create, **params))
        status = _REFUND_STATUS.get(refund.get("status"), PaymentStatus.PENDING)
        result = AdapterResult(
            transaction_id=refund["id"],
            status=status,
            amount=refund["amount"],
            currency=normalize_currency(refund.get("currency")),
            metadata={"payment_intent": transaction_id},
        )
        if status in (PaymentStatus.REFUNDED, PaymentStatus.PENDING):
            await self._record(
                external_id=refund["id"],
                amount=refund["amount"],
                currency=result.currency,
                status=(
                    TransactionStatus.REFUNDED
                    if status == PaymentStatus.REFUNDED
                    else TransactionStatus.PENDING
                ),
                transaction_type=TransactionType.REFUND,
                metadata={"payment_intent": transaction_id},
            )
        return result

    async def void(self, transaction_id: str, options: dict[str, Any]) -> AdapterResult:
        config = await self.load_config()
        params: dict[str, Any] = {"api_key": config.credentials["secret_key"]}
        if options.get("reason"):
            params["cancellation_reason"] = options["reason"]
        intent = _as_dict(await self._stripe(stripe.PaymentIntent.cancel, transaction_id, **params))
        result = self._intent_result(intent)
        if result.status == PaymentStatus.VOIDED:
            await self._record(
                external_id=void_external_id(intent["id"]),
                amount=intent["amount"],
                currency=result.currency,
                status=TransactionStatus.SUCCEEDED,
                transaction_type=TransactionType.VOID,
                metadata={"authorization_id": intent["id"]},
            )
        return result

    async def get_status(self, transaction_id: str) -> AdapterResult:
        config = await self.load_config()
        intent = await self._stripe(
            stripe.PaymentIntent.retrieve, transaction_id, api_key=config.credentials["secret_key"]
        )
        return self._intent_result(_as_dict(intent))

    async def test_connection(self) -> ConnectionStatus:
        config = await self.load_config()
        balance = await self._stripe(
            stripe.Balance.retrieve, api_key=config.credentials["secret_key"]
        )
        test_mode = not _as_dict(balance).get("livemode", False)
        return ConnectionStatus(
            success=True,
            message=f"Connected to Stripe ({'test' if test_mode else 'live'} mode)",
            test_mode=test_mode,
        )

    async def client_token(self) -> dict[str, Any]:
        config = await self.load_config(required=("publishable_key",))
        return {"publishable_key": config.credentials["publishable_key"]}

    async def verify_webhook(self, request: InboundWebhook, config: ProviderConfig) -> Any:
        signature = header(request.headers, "Stripe-Signature")
        if not signature:
            raise WebhookAuthenticationError("stripe", "missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(
                request.body,
                signature,
                config.credentials["webhook_secret"],
                tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookAuthenticationError("stripe", str(e)) from e
        except ValueError as e:
            raise WebhookPayloadError("stripe", "body is not valid JSON") from e
        except AttributeError as e:
            # the SDK builds the event with dict methods; a JSON array or scalar fails there
            raise WebhookPayloadError("stripe", "body is not a JSON object") from e
        payload = _as_dict(event)
        if "type" not in payload or "object" not in (payload.get("data") or {}):
            raise WebhookPayloadError("stripe", "missing type or data.object")
        return payload

    def parse_webhook_event(self, payload: Any, config: ProviderConfig) -> NormalizedWebhookEvent:
        payload = _as_dict(payload)
        event_type = payload["type"]
        obj = payload["data"]["object"]

        if event_type == "payment_intent.succeeded":
            return NormalizedWebhookEvent(
                kind=WebhookEventKind.PAYMENT_SUCCEEDED,
                provider_event_type=event_type,
                external_id=obj["id"],
                amount=obj.get("amount_received") or obj.get("amount"),
                currency=normalize_currency(obj.get("currency")),
                customer_email=obj.get("receipt_email"),
                metadata=dict(obj.get("metadata") or {}),
            )
        if event_type == "payment_intent.payment_failed":
            last_error = obj.get("last_payment_error") or {}
            return NormalizedWebhookEvent(
                kind=WebhookEventKind.PAYMENT_FAILED,
                provider_event_type=event_type,
                external_id=obj["id"],
                amount=obj.get("amount"),
                currency=normalize_currency(obj.get("currency")),
                customer_email=obj.get("receipt_email"),
                metadata={"failure_message": last_error.get("message")},
            )
        if event_type == "payment_intent.canceled":
            return NormalizedWebhookEvent(
                kind=WebhookEventKind.VOID_COMPLETED,
                provider_event_type=event_type,
                external_id=obj["id"],
                amount=obj.get("amount"),
                currency=normalize_currency(obj.get("currency")),
            )
        if event_type in ("refund.created", "refund.updated") and obj.get("status") == "succeeded":
            return NormalizedWebhookEvent(
                kind=WebhookEventKind.REFUND_COMPLETED,
                provider_event_type=event_type,
                external_id=obj["id"],
                amount=obj.get("amount"),
                currency=normalize_currency(obj.get("currency")),
                metadata={"payment_intent": obj.get("payment_intent")},
            )
        if event_type == "charge.refunded":
            # refunds are keyed by refund id only; without the expanded list the
            # matching refund.* event records it
            refunds = (obj.get("refunds") or {}).get("data") or []
            if refunds:
                latest = refunds[0]
                return NormalizedWebhookEvent(
                    kind=WebhookEventKind.REFUND_COMPLETED,
                    provider_event_type=event_type,
                    external_id=latest["id"],
                    amount=latest.get("amount"),
                    currency=normalize_currency(latest.get("currency") or obj.get("currency")),
                    metadata={"payment_intent": obj.get("payment_intent")},
                )

        return NormalizedWebhookEvent(
            kind=WebhookEventKind.UNRECOGNIZED,
            provider_event_type=event_type,
        )
