"""
Square adapter - Payments and Refunds REST APIs over httpx.

Amounts are native minor units (amount_money.amount). Square requires an
idempotency key on every mutating call; callers may supply one, otherwise a
fresh uuid4 is used.

Webhooks: `x-square-hmacsha256-signature`, base64 HMAC-SHA256 over the
notification URL followed by the raw body, keyed with the tenant's
`webhook_signature_key`.
"""
from __future__ import annotations

import json
import uuid
from typing import Any

from app.core.config import settings
from app.core.exceptions import (
    ProviderDeclinedError,
    ProviderError,
    UnsupportedOperationError,
    WebhookAuthenticationError,
    WebhookPayloadError,
)
from app.core.logging import get_logger
from app.core.money import normalize_currency
from app.core.signatures import verify_base64_signature
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
from app.domain.services.payments.http_client import decode_json, send_provider_request

logger = get_logger(__name__)

SANDBOX_BASE_URL = "https://connect.squareupsandbox.com"
LIVE_BASE_URL = "https://connect.squareup.com"
SIGNATURE_HEADER = "x-square-hmacsha256-signature"

_PAYMENT_STATUS = {
    "COMPLETED": PaymentStatus.SUCCEEDED,
    "APPROVED": PaymentStatus.AUTHORIZED,
    "PENDING": PaymentStatus.PENDING,
    "FAILED": PaymentStatus.FAILED,
    "CANCELED": PaymentStatus.VOIDED,
}

_REFUND_STATUS = {
    "COMPLETED": PaymentStatus.REFUNDED,
    "PENDING": PaymentStatus.PENDING,
    "REJECTED": PaymentStatus.FAILED,
    "FAILED": PaymentStatus.FAILED,
}

_DECLINE_CATEGORIES = {"PAYMENT_METHOD_ERROR"}


def _money_of(obj: dict[str, Any], fallback_currency: str = "USD") -> tuple[int | None, str]:
    money = obj.get("amount_money") or obj.get("total_money") or {}
    if "amount" not in money:
        return None, normalize_currency(fallback_currency)
    return int(money["amount"]), normalize_currency(money.get("currency"), fallback_currency)


class SquareAdapter(BasePaymentAdapter):
    provider = PaymentProvider.SQUARE
    required_credentials = ("access_token", "location_id")
    webhook_credentials = ("webhook_signature_key",)

    @staticmethod
    def _base_url(config: ProviderConfig) -> str:
        return SANDBOX_BASE_URL if config.test_mode else LIVE_BASE_URL

    async def _api(
        self,
        config: ProviderConfig,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async def _send() -> dict[str, Any]:
            response = await send_provider_request(
                "square",
                method,
                f"{self._base_url(config)}{path}",
                operation=operation,
                json=json_body,
                headers={
                    "Authorization": f"Bearer {config.credentials['access_token']}",
                    "Square-Version": settings.SQUARE_API_VERSION,
                    "Content-Type": "application/json",
                },
            )
            body = decode_json("square", operation, response)
            if response.status_code >= 400:
                errors = body.get("errors") or [{}]
                first = errors[0]
                message = first.get("detail") or first.get("code") or "request failed"
                if first.get("category") in _DECLINE_CATEGORIES:
                    raise ProviderDeclinedError(
                        "square", message, details={"code": first.get("code")}
                    )
                raise ProviderError.from_response("square", operation, response, message=message)
            return body

        return await self._call(_send)

    def _payment_result(self, payment: dict[str, Any], currency: str) -> AdapterResult:
        amount, currency = _money_of(payment, currency)
        return AdapterResult(
            transaction_id=payment["id"],
            status=_PAYMENT_STATUS.get(payment.get("status"), PaymentStatus.PENDING),
            amount=amount,
            currency=currency,
            metadata={"square_status": payment.get("status"), "receipt_url": payment.get("receipt_url")},
        )

    async def _create_payment(
        self, amount: int, currency: str, options: dict[str, Any], autocomplete: bool
    ) -> tuple[dict[str, Any], AdapterResult]:
        config = await self.load_config()
        source = options.get("source")
        if not source:
            raise UnsupportedOperationError(
                "square", "charge", "Square payments require a source (card nonce or card id)"
            )
        body: dict[str, Any] = {
            "source_id": source,
            "idempotency_key": options.get("idempotency_key") or str(uuid.uuid4()),
            "amount_money": {"amount": amount, "currency": currency},
            "autocomplete": autocomplete,
            "location_id": config.credentials["location_id"],
        }
        if options.get("customer_email"):
            body["buyer_email_address"] = options["customer_email"]
        if options.get("description"):
            body["note"] = options["description"][:500]
        if options.get("reference_id"):
            body["reference_id"] = options["reference_id"]
        if options.get("customer_id"):
            body["customer_id"] = options["customer_id"]

        response = await self._api(
            config, "POST", "/v2/payments", operation="create_payment", json_body=body
        )
        payment = response["payment"]
        return payment, self._payment_result(payment, currency)

    async def charge(self, amount: int, currency: str, options: dict[str, Any]) -> AdapterResult:
        payment, result = await self._create_payment(amount, currency, options, autocomplete=True)
        if result.status in (PaymentStatus.SUCCEEDED, PaymentStatus.PENDING):
            await self._record(
                external_id=payment["id"],
                amount=result.amount if result.amount is not None else amount,
                currency=result.currency,
                status=(
                    TransactionStatus.SUCCEEDED
                    if result.status == PaymentStatus.SUCCEEDED
                    else TransactionStatus.PENDING
                ),
                transaction_type=TransactionType.PAYMENT,
                customer_email=options.get("customer_email") or payment.get("buyer_email_address"),
                metadata=dict(options.get("metadata") or {}),
            )
        return result

    async def authorize_only(
        self, amount: int, currency: str, options: dict[str, Any]
    ) -> AdapterResult:
        _, result = await self._create_payment(amount, currency, options, autocomplete=False)
        return result

    async def capture(
        self,
        transaction_id: str,
        amount: int | None,
        currency: str,
        options: dict[str, Any],
    ) -> AdapterResult:
        if amount is not None:
            raise UnsupportedOperationError(
                "square", "capture", "Square captures the full authorized amount only"
            )
        config = await self.load_config()
        response = await self._api(
            config,
            "POST",
            f"/v2/payments/{transaction_id}/complete",
            operation="complete_payment",
            json_body={},
        )
        payment = response["payment"]
        result = self._payment_result(payment, currency)
        if result.status == PaymentStatus.SUCCEEDED:
            await self._record(
                external_id=payment["id"],
                amount=result.amount or 0,
                currency=result.currency,
                status=TransactionStatus.SUCCEEDED,
                transaction_type=TransactionType.CAPTURE,
                customer_email=payment.get("buyer_email_address"),
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
        if amount is None:
            # Square needs an explicit amount; a full refund refunds what was paid
            current = await self._api(
                config, "GET", f"/v2/payments/{transaction_id}", operation="get_payment"
            )
            amount, currency = _money_of(current["payment"], currency)

        body: dict[str, Any] = {
            "idempotency_key": options.get("idempotency_key") or str(uuid.uuid4()),
            "payment_id": transaction_id,
            "amount_money": {"amount": amount, "currency": currency},
        }
        if options.get("reason"):
            body["reason"] = options["reason"][:192]

        response = await self._api(
            config, "POST", "/v2/refunds", operation="refund_payment", json_body=body
        )
        refund = response["refund"]
        refunded, refund_currency = _money_of(refund, currency)
        status = _REFUND_STATUS.get(refund.get("status"), PaymentStatus.PENDING)
        if status == PaymentStatus.FAILED:
            raise ProviderDeclinedError("square", f"refund {refund.get('status', '').lower()}")

        await self._record(
            external_id=refund["id"],
            amount=refunded if refunded is not None else amount,
            currency=refund_currency,
            status=(
                TransactionStatus.REFUNDED
                if status == PaymentStatus.REFUNDED
                else TransactionStatus.PENDING
            ),
            transaction_type=TransactionType.REFUND,
            metadata={"payment_id": transaction_id},
        )
        return AdapterResult(
            transaction_id=refund["id"],
            status=status,
            amount=refunded if refunded is not None else amount,
            currency=refund_currency,
            metadata={"payment_id": transaction_id, "square_status": refund.get("status")},
        )

    async def void(self, transaction_id: str, options: dict[str, Any]) -> AdapterResult:
        config = await self.load_config()
        response = await self._api(
            config,
            "POST",
            f"/v2/payments/{transaction_id}/cancel",
            operation="cancel_payment",
            json_body={},
        )
        payment = response["payment"]
        result = self._payment_result(payment, normalize_currency(options.get("currency")))
        if result.status == PaymentStatus.VOIDED:
            await self._record(
                external_id=void_external_id(payment["id"]),
                amount=result.amount or 0,
                currency=result.currency,
                status=TransactionStatus.SUCCEEDED,
                transaction_type=TransactionType.VOID,
                metadata={"authorization_id": payment["id"]},
            )
        return result

    async def get_status(self, transaction_id: str) -> AdapterResult:
        config = await self.load_config()
        response = await self._api(
            config, "GET", f"/v2/payments/{transaction_id}", operation="get_payment"
        )
        return self._payment_result(response["payment"], "USD")

    async def test_connection(self) -> ConnectionStatus:
        config = await self.load_config()
        response = await self._api(config, "GET", "/v2/locations", operation="list_locations")
        locations = response.get("locations") or []
        location_id = config.credentials["location_id"]
        location = next((loc for loc in locations if loc.get("id") == location_id), None)
        if location is None:
            return ConnectionStatus(
                success=False,
                message=f"Location {location_id} not found for these credentials",
                test_mode=config.test_mode,
            )
        return ConnectionStatus(
            success=True,
            message=f"Connected to Square location '{location.get('name', location_id)}'",
            test_mode=config.test_mode,
        )

    async def client_token(self) -> dict[str, Any]:
        config = await self.load_config()
        return {
            "application_id": config.credentials.get("application_id"),
            "location_id": config.credentials["location_id"],
        }

    async def verify_webhook(self, request: InboundWebhook, config: ProviderConfig) -> Any:
        signature = header(request.headers, SIGNATURE_HEADER)
        if not signature:
            raise WebhookAuthenticationError("square", f"missing {SIGNATURE_HEADER} header")
        signed = request.url.encode("utf-8") + request.body
        if not verify_base64_signature(
            config.credentials["webhook_signature_key"], signed, signature
        ):
            raise WebhookAuthenticationError("square", "signature mismatch")
        try:
            payload = json.loads(request.body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise WebhookPayloadError("square", "body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise WebhookPayloadError("square", "body is not a JSON object")
        return payload

    def parse_webhook_event(self, payload: Any, config: ProviderConfig) -> NormalizedWebhookEvent:
        event_type = payload.get("type", "")
        obj = (payload.get("data") or {}).get("object") or {}

        if event_type in ("payment.created", "payment.updated", "payment.completed", "payment.failed"):
            payment = obj.get("payment") or {}
            status = payment.get("status")
            if event_type == "payment.completed":
                status = "COMPLETED"
            elif event_type == "payment.failed":
                status = "FAILED"
            kind = {
                "COMPLETED": WebhookEventKind.PAYMENT_SUCCEEDED,
                "FAILED": WebhookEventKind.PAYMENT_FAILED,
                "CANCELED": WebhookEventKind.VOID_COMPLETED,
            }.get(status)
            if kind and payment.get("id"):
                amount, currency = _money_of(payment)
                return NormalizedWebhookEvent(
                    kind=kind,
                    provider_event_type=event_type,
                    external_id=payment["id"],
                    amount=amount,
                    currency=currency,
                    customer_email=payment.get("buyer_email_address"),
                    metadata={"square_event_id": payload.get("event_id")},
                )

        if event_type in ("refund.created", "refund.updated"):
            refund = obj.get("refund") or {}
            if refund.get("status") == "COMPLETED" and refund.get("id"):
                amount, currency = _money_of(refund)
                return NormalizedWebhookEvent(
                    kind=WebhookEventKind.REFUND_COMPLETED,
                    provider_event_type=event_type,
                    external_id=refund["id"],
                    amount=amount,
                    currency=currency,
                    metadata={
                        "payment_id": refund.get("payment_id"),
                        "square_event_id": payload.get("event_id"),
                    },
                )

        return NormalizedWebhookEvent(
            kind=WebhookEventKind.UNRECOGNIZED,
            provider_event_type=event_type,
        )
