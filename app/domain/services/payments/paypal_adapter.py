"""
PayPal adapter - Orders v2 and Payments v2 REST APIs over httpx.

Amounts travel as decimal major-unit strings ("19.99") and are converted to
minor units here. Every call fetches a fresh OAuth token with the tenant's
client credentials.

Webhooks: PAYPAL-TRANSMISSION-ID / -TIME / -SIG, PAYPAL-CERT-URL and
PAYPAL-AUTH-ALGO headers, checked by PayPal itself through
/v1/notifications/verify-webhook-signature with the tenant's `webhook_id`.
"""
from __future__ import annotations

import json
import uuid
from typing import Any

from app.core.exceptions import (
    ProviderDeclinedError,
    ProviderError,
    WebhookAuthenticationError,
    WebhookPayloadError,
)
from app.core.logging import get_logger
from app.core.money import format_major, normalize_currency, to_minor_units
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

SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
LIVE_BASE_URL = "https://api-m.paypal.com"

_CAPTURE_STATUS = {
    "COMPLETED": PaymentStatus.SUCCEEDED,
    "PENDING": PaymentStatus.PENDING,
    "DECLINED": PaymentStatus.FAILED,
    "FAILED": PaymentStatus.FAILED,
    "REFUNDED": PaymentStatus.REFUNDED,
    "PARTIALLY_REFUNDED": PaymentStatus.SUCCEEDED,
}

_AUTHORIZATION_STATUS = {
    "CREATED": PaymentStatus.AUTHORIZED,
    "PENDING": PaymentStatus.PENDING,
    "CAPTURED": PaymentStatus.SUCCEEDED,
    "PARTIALLY_CAPTURED": PaymentStatus.SUCCEEDED,
    "VOIDED": PaymentStatus.VOIDED,
    "DENIED": PaymentStatus.FAILED,
    "EXPIRED": PaymentStatus.FAILED,
}

_ORDER_STATUS = {
    "CREATED": PaymentStatus.PENDING,
    "SAVED": PaymentStatus.PENDING,
    "APPROVED": PaymentStatus.PENDING,
    "PAYER_ACTION_REQUIRED": PaymentStatus.PENDING,
    "VOIDED": PaymentStatus.VOIDED,
    "COMPLETED": PaymentStatus.SUCCEEDED,
}

_REFUND_STATUS = {
    "COMPLETED": PaymentStatus.REFUNDED,
    "PENDING": PaymentStatus.PENDING,
    "CANCELLED": PaymentStatus.FAILED,
    "FAILED": PaymentStatus.FAILED,
}

_WEBHOOK_HEADERS = {
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "cert_url": "PAYPAL-CERT-URL",
    "auth_algo": "PAYPAL-AUTH-ALGO",
}

_DECLINE_ISSUES = {"INSTRUMENT_DECLINED", "PAYER_CANNOT_PAY", "TRANSACTION_REFUSED"}


def _money(amount: int, currency: str) -> dict[str, str]:
    return {"currency_code": currency, "value": format_major(amount, currency)}


def _minor(money: dict[str, Any] | None, fallback_currency: str) -> tuple[int | None, str]:
    if not money:
        return None, fallback_currency
    currency = normalize_currency(money.get("currency_code"), fallback_currency)
    return to_minor_units(money["value"], currency), currency


def _error_message(body: dict[str, Any]) -> tuple[str, str | None]:
    details = body.get("details") or []
    issue = details[0].get("issue") if details else None
    description = details[0].get("description") if details else None
    return description or body.get("message") or body.get("error_description") or "request failed", issue


def _approval_url(order: dict[str, Any]) -> str | None:
    for link in order.get("links") or []:
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href")
    return None


class PayPalAdapter(BasePaymentAdapter):
    provider = PaymentProvider.PAYPAL
    required_credentials = ("client_id", "client_secret")
    webhook_credentials = ("client_id", "client_secret", "webhook_id")

    @staticmethod
    def _base_url(config: ProviderConfig) -> str:
        return SANDBOX_BASE_URL if config.test_mode else LIVE_BASE_URL

    async def _access_token(self, config: ProviderConfig) -> str:
        response = await send_provider_request(
            "paypal",
            "POST",
            f"{self._base_url(config)}/v1/oauth2/token",
            operation="oauth",
            auth=(config.credentials["client_id"], config.credentials["client_secret"]),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        body = decode_json("paypal", "oauth", response)
        if response.status_code != 200 or not body.get("access_token"):
            raise ProviderError.from_response(
                "paypal", "oauth", response,
                message=body.get("error_description") or "authentication failed",
            )
        return body["access_token"]

    async def _api(
        self,
        config: ProviderConfig,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        async def _send() -> dict[str, Any]:
            token = await self._access_token(config)
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Prefer": "return=representation",
            }
            if request_id:
                headers["PayPal-Request-Id"] = request_id
            response = await send_provider_request(
                "paypal",
                method,
                f"{self._base_url(config)}{path}",
                operation=operation,
                json=json_body,
                headers=headers,
            )
            body = decode_json("paypal", operation, response)
            if response.status_code >= 400:
                message, issue = _error_message(body)
                if issue in _DECLINE_ISSUES:
                    raise ProviderDeclinedError("paypal", message, details={"issue": issue})
                raise ProviderError.from_response("paypal", operation, response, message=message)
            return body

        return await self._call(_send)

    def _order_body(
        self, intent: str, amount: int, currency: str, options: dict[str, Any]
    ) -> dict[str, Any]:
        unit: dict[str, Any] = {"amount": _money(amount, currency), "custom_id": self.tenant_id}
        if options.get("description"):
            unit["description"] = options["description"][:127]
        if options.get("invoice_id"):
            unit["invoice_id"] = options["invoice_id"]
        body: dict[str, Any] = {"intent": intent, "purchase_units": [unit]}

        if options.get("source"):
            # vaulted payer: PayPal completes the order without redirecting the buyer
            body["payment_source"] = {"paypal": {"vault_id": options["source"]}}
        else:
            context = {
                "return_url": options.get("return_url"),
                "cancel_url": options.get("cancel_url"),
                "user_action": "PAY_NOW" if intent == "CAPTURE" else "CONTINUE",
            }
            body["application_context"] = {k: v for k, v in context.items() if v}
        return body

    async def _record_capture(
        self,
        capture: dict[str, Any],
        currency: str,
        transaction_type: TransactionType,
        options: dict[str, Any],
    ) -> AdapterResult:
        amount, currency = _minor(capture.get("amount"), currency)
        status = _CAPTURE_STATUS.get(capture.get("status"), PaymentStatus.PENDING)
        result = AdapterResult(
            transaction_id=capture["id"],
            status=status,
            amount=amount,
            currency=currency,
            metadata={"paypal_status": capture.get("status")},
        )
        if status in (PaymentStatus.SUCCEEDED, PaymentStatus.PENDING):
            await self._record(
                external_id=capture["id"],
                amount=amount or 0,
                currency=currency,
                status=(
                    TransactionStatus.SUCCEEDED
                    if status == PaymentStatus.SUCCEEDED
                    else TransactionStatus.PENDING
                ),
                transaction_type=transaction_type,
                customer_email=options.get("customer_email"),
                metadata=dict(options.get("metadata") or {}),
            )
        return result

    @staticmethod
    def _first_capture(order: dict[str, Any]) -> dict[str, Any] | None:
        for unit in order.get("purchase_units") or []:
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                return captures[0]
        return None

    @staticmethod
    def _first_authorization(order: dict[str, Any]) -> dict[str, Any] | None:
        for unit in order.get("purchase_units") or []:
            authorizations = (unit.get("payments") or {}).get("authorizations") or []
            if authorizations:
                return authorizations[0]
        return None

    async def _capture_order(
        self,
        config: ProviderConfig,
        order_id: str,
        currency: str,
        transaction_type: TransactionType,
        options: dict[str, Any],
    ) -> AdapterResult:
        order = await self._api(
            config,
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            operation="capture_order",
            json_body={},
            request_id=options.get("idempotency_key") or str(uuid.uuid4()),
        )
        capture = self._first_capture(order)
        if capture is None:
            raise ProviderError("paypal", f"order {order_id} returned no capture")
        result = await self._record_capture(capture, currency, transaction_type, options)
        result.metadata["order_id"] = order_id
        return result

    async def charge(self, amount: int, currency: str, options: dict[str, Any]) -> AdapterResult:
        config = await self.load_config()
        order = await self._api(
            config,
            "POST",
            "/v2/checkout/orders",
            operation="create_order",
            json_body=self._order_body("CAPTURE", amount, currency, options),
            request_id=options.get("idempotency_key") or str(uuid.uuid4()),
        )
        status = order.get("status")

        if status == "COMPLETED":
            capture = self._first_capture(order)
            if capture is None:
                raise ProviderError("paypal", f"completed order {order['id']} has no capture")
            result = await self._record_capture(capture, currency, TransactionType.PAYMENT, options)
            result.metadata["order_id"] = order["id"]
            return result
        if status == "APPROVED":
            return await self._capture_order(
                config, order["id"], currency, TransactionType.PAYMENT, options
            )

        # buyer must approve first; no money has moved yet
        return AdapterResult(
            transaction_id=order["id"],
            status=PaymentStatus.PENDING,
            amount=amount,
            currency=currency,
            metadata={"paypal_status": status, "approval_url": _approval_url(order)},
        )

    async def authorize_only(
        self, amount: int, currency: str, options: dict[str, Any]
    ) -> AdapterResult:
        config = await self.load_config()
        order = await self._api(
            config,
            "POST",
            "/v2/checkout/orders",
            operation="create_order",
            json_body=self._order_body("AUTHORIZE", amount, currency, options),
            request_id=options.get("idempotency_key") or str(uuid.uuid4()),
        )
        if order.get("status") == "APPROVED":
            order = await self._api(
                config,
                "POST",
                f"/v2/checkout/orders/{order['id']}/authorize",
                operation="authorize_order",
                json_body={},
            )

        authorization = self._first_authorization(order)
        if authorization is None:
            return AdapterResult(
                transaction_id=order["id"],
                status=PaymentStatus.PENDING,
                amount=amount,
                currency=currency,
                metadata={"paypal_status": order.get("status"), "approval_url": _approval_url(order)},
            )
        auth_amount, auth_currency = _minor(authorization.get("amount"), currency)
        return AdapterResult(
            transaction_id=authorization["id"],
            status=_AUTHORIZATION_STATUS.get(authorization.get("status"), PaymentStatus.PENDING),
            amount=auth_amount,
            currency=auth_currency,
            metadata={"order_id": order["id"]},
        )

    async def capture(
        self,
        transaction_id: str,
        amount: int | None,
        currency: str,
        options: dict[str, Any],
    ) -> AdapterResult:
        config = await self.load_config()
        if options.get("capture_order"):
            # buyer-approved CAPTURE order from charge(): this is the payment itself
            return await self._capture_order(
                config, transaction_id, currency, TransactionType.PAYMENT, options
            )

        body: dict[str, Any] = {"final_capture": True}
        if amount is not None:
            body["amount"] = _money(amount, currency)
        capture = await self._api(
            config,
            "POST",
            f"/v2/payments/authorizations/{transaction_id}/capture",
            operation="capture",
            json_body=body,
            request_id=options.get("idempotency_key") or str(uuid.uuid4()),
        )
        if not capture.get("amount") and amount is not None:
            capture["amount"] = _money(amount, currency)
        result = await self._record_capture(capture, currency, TransactionType.CAPTURE, options)
        result.metadata["authorization_id"] = transaction_id
        return result

    async def refund(
        self,
        transaction_id: str,
        amount: int | None,
        currency: str,
        options: dict[str, Any],
    ) -> AdapterResult:
        config = await self.load_config()
        body: dict[str, Any] = {}
        if amount is not None:
            body["amount"] = _money(amount, currency)
        if options.get("reason"):
            body["note_to_payer"] = options["reason"][:255]

        refund = await self._api(
            config,
            "POST",
            f"/v2/payments/captures/{transaction_id}/refund",
            operation="refund",
            json_body=body,
            request_id=options.get("idempotency_key") or str(uuid.uuid4()),
        )
        refunded, refund_currency = _minor(refund.get("amount"), currency)
        if refunded is None:
            refunded = amount
        status = _REFUND_STATUS.get(refund.get("status"), PaymentStatus.PENDING)
        result = AdapterResult(
            transaction_id=refund["id"],
            status=status,
            amount=refunded,
            currency=refund_currency,
            metadata={"capture_id": transaction_id, "paypal_status": refund.get("status")},
        )
        if status in (PaymentStatus.REFUNDED, PaymentStatus.PENDING):
            await self._record(
                external_id=refund["id"],
                amount=refunded or 0,
                currency=refund_currency,
                status=(
                    TransactionStatus.REFUNDED
                    if status == PaymentStatus.REFUNDED
                    else TransactionStatus.PENDING
                ),
                transaction_type=TransactionType.REFUND,
                metadata={"capture_id": transaction_id},
            )
        return result

    async def void(self, transaction_id: str, options: dict[str, Any]) -> AdapterResult:
        config = await self.load_config()
        authorization = await self._api(
            config,
            "POST",
            f"/v2/payments/authorizations/{transaction_id}/void",
            operation="void",
        )
        amount, currency = _minor(authorization.get("amount"), normalize_currency(options.get("currency")))
        await self._record(
            external_id=void_external_id(transaction_id),
            amount=amount or 0,
            currency=currency,
            status=TransactionStatus.SUCCEEDED,
            transaction_type=TransactionType.VOID,
            metadata={"authorization_id": transaction_id},
        )
        return AdapterResult(
            transaction_id=transaction_id,
            status=PaymentStatus.VOIDED,
            amount=amount,
            currency=currency,
        )

    async def get_status(self, transaction_id: str) -> AdapterResult:
        config = await self.load_config()
        try:
            capture = await self._api(
                config, "GET", f"/v2/payments/captures/{transaction_id}", operation="get_capture"
            )
            amount, currency = _minor(capture.get("amount"), "USD")
            return AdapterResult(
                transaction_id=transaction_id,
                status=_CAPTURE_STATUS.get(capture.get("status"), PaymentStatus.PENDING),
                amount=amount,
                currency=currency,
                metadata={"paypal_status": capture.get("status")},
            )
        except ProviderError as e:
            if e.details.get("status_code") != 404:
                raise

        order = await self._api(
            config, "GET", f"/v2/checkout/orders/{transaction_id}", operation="get_order"
        )
        units = order.get("purchase_units") or [{}]
        amount, currency = _minor(units[0].get("amount"), "USD")
        return AdapterResult(
            transaction_id=transaction_id,
            status=_ORDER_STATUS.get(order.get("status"), PaymentStatus.PENDING),
            amount=amount,
            currency=currency,
            metadata={"paypal_status": order.get("status")},
        )

    async def test_connection(self) -> ConnectionStatus:
        config = await self.load_config()
        await self._call(self._access_token, config)
        return ConnectionStatus(
            success=True,
            message=f"PayPal credentials verified ({'sandbox' if config.test_mode else 'live'})",
            test_mode=config.test_mode,
        )

    async def client_token(self) -> dict[str, Any]:
        config = await self.load_config(required=("client_id",))
        return {"client_id": config.credentials["client_id"]}

    async def verify_webhook(self, request: InboundWebhook, config: ProviderConfig) -> Any:
        verification: dict[str, Any] = {}
        for field_name, header_name in _WEBHOOK_HEADERS.items():
            value = header(request.headers, header_name)
            if not value:
                raise WebhookAuthenticationError("paypal", f"missing {header_name} header")
            verification[field_name] = value

        try:
            event = json.loads(request.body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise WebhookAuthenticationError("paypal", "body is not valid JSON") from e

        verification["webhook_id"] = config.credentials["webhook_id"]
        verification["webhook_event"] = event
        result = await self._api(
            config,
            "POST",
            "/v1/notifications/verify-webhook-signature",
            operation="verify_webhook",
            json_body=verification,
        )
        if result.get("verification_status") != "SUCCESS":
            raise WebhookAuthenticationError(
                "paypal", f"verification_status={result.get('verification_status')}"
            )
        if not isinstance(event, dict) or "event_type" not in event:
            raise WebhookPayloadError("paypal", "missing event_type")
        return event

    def parse_webhook_event(self, payload: Any, config: ProviderConfig) -> NormalizedWebhookEvent:
        event_type = payload["event_type"]
        resource = payload.get("resource") or {}
        amount, currency = _minor(resource.get("amount"), "USD")

        kind = {
            "PAYMENT.CAPTURE.COMPLETED": WebhookEventKind.PAYMENT_SUCCEEDED,
            "PAYMENT.CAPTURE.DENIED": WebhookEventKind.PAYMENT_FAILED,
            "PAYMENT.CAPTURE.DECLINED": WebhookEventKind.PAYMENT_FAILED,
            "PAYMENT.CAPTURE.REFUNDED": WebhookEventKind.REFUND_COMPLETED,
            "PAYMENT.AUTHORIZATION.VOIDED": WebhookEventKind.VOID_COMPLETED,
        }.get(event_type, WebhookEventKind.UNRECOGNIZED)

        if kind == WebhookEventKind.UNRECOGNIZED or not resource.get("id"):
            return NormalizedWebhookEvent(
                kind=WebhookEventKind.UNRECOGNIZED, provider_event_type=event_type
            )

        payer = resource.get("payer") or {}
        return NormalizedWebhookEvent(
            kind=kind,
            provider_event_type=event_type,
            external_id=resource["id"],
            amount=amount,
            currency=currency,
            customer_email=payer.get("email_address"),
            metadata={"paypal_event_id": payload.get("id")},
        )
