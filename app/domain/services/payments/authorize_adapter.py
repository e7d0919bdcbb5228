"""
Authorize.net adapter - JSON flavour of the XML API over httpx.

The gateway validates requests against its XML schema, so keys inside a
request are emitted in schema order. Amounts are decimal major units.
Responses start with a UTF-8 BOM, which decode_json strips.

Webhooks: `X-ANET-Signature: sha512=<HEX>`, HMAC-SHA512 of the raw body
keyed with the tenant's `signature_key`; hex case is not significant.
"""
from __future__ import annotations

import hashlib
import json
import uuid
from typing import Any

from app.core.exceptions import (
    ProviderDeclinedError,
    ProviderError,
    UnsupportedOperationError,
    WebhookAuthenticationError,
    WebhookPayloadError,
)
from app.core.logging import get_logger
from app.core.money import format_major, normalize_currency, to_minor_units
from app.core.signatures import verify_hex_signature
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

SANDBOX_URL = "https://apitest.authorize.net/xml/v1/request.api"
LIVE_URL = "https://api.authorize.net/xml/v1/request.api"
SIGNATURE_HEADER = "X-ANET-Signature"
SIGNATURE_PREFIX = "sha512="

RESPONSE_APPROVED = "1"
RESPONSE_DECLINED = "2"
RESPONSE_ERROR = "3"
RESPONSE_HELD = "4"

_TRANSACTION_STATUS = {
    "authorizedPendingCapture": PaymentStatus.AUTHORIZED,
    "FDSAuthorizedPendingReview": PaymentStatus.PENDING,
    "FDSPendingReview": PaymentStatus.PENDING,
    "underReview": PaymentStatus.PENDING,
    "capturedPendingSettlement": PaymentStatus.PENDING,
    "approvedReview": PaymentStatus.PENDING,
    "settledSuccessfully": PaymentStatus.SUCCEEDED,
    "refundPendingSettlement": PaymentStatus.PENDING,
    "refundSettledSuccessfully": PaymentStatus.REFUNDED,
    "voided": PaymentStatus.VOIDED,
    "declined": PaymentStatus.FAILED,
    "expired": PaymentStatus.FAILED,
    "failedReview": PaymentStatus.FAILED,
    "generalError": PaymentStatus.FAILED,
    "communicationError": PaymentStatus.FAILED,
    "couldNotVoid": PaymentStatus.FAILED,
    "returnedItem": PaymentStatus.FAILED,
    "chargeback": PaymentStatus.FAILED,
}

_SUCCEEDED_EVENTS = {
    "net.authorize.payment.authcapture.created",
    "net.authorize.payment.capture.created",
    "net.authorize.payment.priorAuthCapture.created",
}


def _transaction_error(response: dict[str, Any]) -> str:
    transaction = response.get("transactionResponse") or {}
    errors = transaction.get("errors") or []
    if errors:
        return errors[0].get("errorText") or "transaction failed"
    messages = (response.get("messages") or {}).get("message") or []
    if messages:
        return messages[0].get("text") or "transaction failed"
    return "transaction failed"


def _card_payment(options: dict[str, Any], operation: str) -> dict[str, Any]:
    if options.get("opaque_data"):
        opaque = options["opaque_data"]
        return {
            "opaqueData": {
                "dataDescriptor": opaque["data_descriptor"],
                "dataValue": opaque["data_value"],
            }
        }
    card = options.get("card")
    if not card:
        raise UnsupportedOperationError(
            "authorize", operation, "Authorize.net requires card details or Accept.js opaque data"
        )
    credit_card = {
        "cardNumber": str(card["number"]),
        "expirationDate": str(card["expiration"]),
    }
    if card.get("code"):
        credit_card["cardCode"] = str(card["code"])
    return {"creditCard": credit_card}


class AuthorizeNetAdapter(BasePaymentAdapter):
    provider = PaymentProvider.AUTHORIZE
    required_credentials = ("api_login_id", "transaction_key")
    webhook_credentials = ("signature_key",)

    @staticmethod
    def _url(config: ProviderConfig) -> str:
        return SANDBOX_URL if config.test_mode else LIVE_URL

    @staticmethod
    def _currency(config: ProviderConfig, currency: str | None = None) -> str:
        return normalize_currency(currency or config.credentials.get("currency"))

    async def _api(
        self,
        config: ProviderConfig,
        request_name: str,
        fields: dict[str, Any],
        *,
        operation: str,
    ) -> dict[str, Any]:
        """Send one API request; merchantAuthentication always goes first"""
        request_body: dict[str, Any] = {
            "merchantAuthentication": {
                "name": config.credentials["api_login_id"],
                "transactionKey": config.credentials["transaction_key"],
            },
        }
        request_body.update(fields)

        async def _send() -> dict[str, Any]:
            response = await send_provider_request(
                "authorize",
                "POST",
                self._url(config),
                operation=operation,
                json={request_name: request_body},
                headers={"Content-Type": "application/json"},
            )
            body = decode_json("authorize", operation, response)
            if response.status_code >= 400:
                raise ProviderError.from_response("authorize", operation, response)
            return body

        return await self._call(_send)

    async def _transaction(
        self,
        config: ProviderConfig,
        transaction_request: dict[str, Any],
        *,
        operation: str,
    ) -> dict[str, Any]:
        """createTransactionRequest; returns transactionResponse, raising on decline or error"""
        response = await self._api(
            config,
            "createTransactionRequest",
            {
                "refId": uuid.uuid4().hex[:20],
                "transactionRequest": transaction_request,
            },
            operation=operation,
        )
        transaction = response.get("transactionResponse") or {}
        code = str(transaction.get("responseCode") or "")
        if code in (RESPONSE_APPROVED, RESPONSE_HELD):
            return transaction
        message = _transaction_error(response)
        if code == RESPONSE_DECLINED:
            raise ProviderDeclinedError(
                "authorize", message, details={"transaction_id": transaction.get("transId")}
            )
        raise ProviderError(
            "authorize",
            message,
            details={"operation": operation, "response_code": code or None},
        )

    async def _details(self, config: ProviderConfig, transaction_id: str) -> dict[str, Any]:
        response = await self._api(
            config,
            "getTransactionDetailsRequest",
            {"transId": transaction_id},
            operation="get_transaction_details",
        )
        if (response.get("messages") or {}).get("resultCode") != "Ok":
            raise ProviderError(
                "authorize",
                _transaction_error(response),
                details={"operation": "get_transaction_details", "transaction_id": transaction_id},
            )
        return response.get("transaction") or {}

    def _sale_request(
        self,
        transaction_type: str,
        amount: int,
        currency: str,
        options: dict[str, Any],
        operation: str,
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "transactionType": transaction_type,
            "amount": format_major(amount, currency),
            "currencyCode": currency,
            "payment": _card_payment(options, operation),
        }
        order = {}
        if options.get("invoice_number"):
            order["invoiceNumber"] = str(options["invoice_number"])[:20]
        if options.get("description"):
            order["description"] = options["description"][:255]
        if order:
            request["order"] = order
        if options.get("customer_email"):
            request["customer"] = {"email": options["customer_email"]}
        return request

    async def charge(self, amount: int, currency: str, options: dict[str, Any]) -> AdapterResult:
        config = await self.load_config()
        currency = self._currency(config, currency)
        transaction = await self._transaction(
            config,
            self._sale_request("authCaptureTransaction", amount, currency, options, "charge"),
            operation="auth_capture",
        )
        held = str(transaction.get("responseCode")) == RESPONSE_HELD
        await self._record(
            external_id=transaction["transId"],
            amount=amount,
            currency=currency,
            status=TransactionStatus.PENDING if held else TransactionStatus.SUCCEEDED,
            transaction_type=TransactionType.PAYMENT,
            customer_email=options.get("customer_email"),
            metadata=dict(options.get("metadata") or {}),
        )
        return AdapterResult(
            transaction_id=transaction["transId"],
            status=PaymentStatus.PENDING if held else PaymentStatus.SUCCEEDED,
            amount=amount,
            currency=currency,
            metadata={"auth_code": transaction.get("authCode"), "held_for_review": held},
        )

    async def authorize_only(
        self, amount: int, currency: str, options: dict[str, Any]
    ) -> AdapterResult:
        config = await self.load_config()
        currency = self._currency(config, currency)
        transaction = await self._transaction(
            config,
            self._sale_request("authOnlyTransaction", amount, currency, options, "authorize_only"),
            operation="auth_only",
        )
        held = str(transaction.get("responseCode")) == RESPONSE_HELD
        return AdapterResult(
            transaction_id=transaction["transId"],
            status=PaymentStatus.PENDING if held else PaymentStatus.AUTHORIZED,
            amount=amount,
            currency=currency,
            metadata={"auth_code": transaction.get("authCode"), "held_for_review": held},
        )

    async def capture(
        self,
        transaction_id: str,
        amount: int | None,
        currency: str,
        options: dict[str, Any],
    ) -> AdapterResult:
        config = await self.load_config()
        currency = self._currency(config, currency)
        if amount is None:
            details = await self._details(config, transaction_id)
            amount = to_minor_units(details.get("authAmount") or 0, currency)

        transaction = await self._transaction(
            config,
            {
                "transactionType": "priorAuthCaptureTransaction",
                "amount": format_major(amount, currency),
                "refTransId": transaction_id,
            },
            operation="prior_auth_capture",
        )
        capture_id = transaction.get("transId") or transaction_id
        await self._record(
            external_id=capture_id,
            amount=amount,
            currency=currency,
            status=TransactionStatus.SUCCEEDED,
            transaction_type=TransactionType.CAPTURE,
            metadata={"authorization_id": transaction_id},
        )
        return AdapterResult(
            transaction_id=capture_id,
            status=PaymentStatus.SUCCEEDED,
            amount=amount,
            currency=currency,
            metadata={"authorization_id": transaction_id},
        )

    async def refund(
        self,
        transaction_id: str,
        amount: int | None,
        currency: str,
        options: dict[str, Any],
    ) -> AdapterResult:
        config = await self.load_config()
        currency = self._currency(config, currency)
        last4 = options.get("card_last4")
        if amount is None or not last4:
            details = await self._details(config, transaction_id)
            if amount is None:
                amount = to_minor_units(
                    details.get("settleAmount") or details.get("authAmount") or 0, currency
                )
            card = (details.get("payment") or {}).get("creditCard") or {}
            last4 = last4 or (card.get("cardNumber") or "")[-4:]
        if not last4:
            raise UnsupportedOperationError(
                "authorize", "refund", "card last four digits are required for a refund"
            )

        transaction = await self._transaction(
            config,
            {
                "transactionType": "refundTransaction",
                "amount": format_major(amount, currency),
                "payment": {"creditCard": {"cardNumber": last4, "expirationDate": "XXXX"}},
                "refTransId": transaction_id,
            },
            operation="refund",
        )
        refund_id = transaction["transId"]
        await self._record(
            external_id=refund_id,
            amount=amount,
            currency=currency,
            status=TransactionStatus.REFUNDED,
            transaction_type=TransactionType.REFUND,
            metadata={"payment_id": transaction_id},
        )
        return AdapterResult(
            transaction_id=refund_id,
            status=PaymentStatus.REFUNDED,
            amount=amount,
            currency=currency,
            metadata={"payment_id": transaction_id},
        )

    async def void(self, transaction_id: str, options: dict[str, Any]) -> AdapterResult:
        config = await self.load_config()
        currency = self._currency(config, options.get("currency"))
        details = await self._details(config, transaction_id)
        amount = to_minor_units(details.get("authAmount") or 0, currency)

        await self._transaction(
            config,
            {"transactionType": "voidTransaction", "refTransId": transaction_id},
            operation="void",
        )
        await self._record(
            external_id=void_external_id(transaction_id),
            amount=amount,
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
        currency = self._currency(config)
        details = await self._details(config, transaction_id)
        raw_status = details.get("transactionStatus")
        raw_amount = details.get("settleAmount") or details.get("authAmount")
        return AdapterResult(
            transaction_id=details.get("transId") or transaction_id,
            status=_TRANSACTION_STATUS.get(raw_status, PaymentStatus.PENDING),
            amount=to_minor_units(raw_amount, currency) if raw_amount is not None else None,
            currency=currency,
            metadata={"authorize_status": raw_status},
        )

    async def test_connection(self) -> ConnectionStatus:
        config = await self.load_config()
        response = await self._api(
            config, "getMerchantDetailsRequest", {}, operation="get_merchant_details"
        )
        if (response.get("messages") or {}).get("resultCode") != "Ok":
            return ConnectionStatus(
                success=False, message=_transaction_error(response), test_mode=config.test_mode
            )
        suffix = " (Sandbox)" if config.test_mode else ""
        return ConnectionStatus(
            success=True,
            message=f"Connected to Authorize.net{suffix}: {response.get('merchantName') or 'Unknown'}",
            test_mode=config.test_mode,
        )

    async def client_token(self) -> dict[str, Any]:
        config = await self.load_config()
        client_key = config.credentials.get("public_client_key")
        if not client_key:
            raise UnsupportedOperationError(
                "authorize", "client_token", "public_client_key is not configured"
            )
        return {"api_login_id": config.credentials["api_login_id"], "client_key": client_key}

    async def verify_webhook(self, request: InboundWebhook, config: ProviderConfig) -> Any:
        signature = header(request.headers, SIGNATURE_HEADER)
        if not signature:
            raise WebhookAuthenticationError("authorize", f"missing {SIGNATURE_HEADER} header")
        if not signature.lower().startswith(SIGNATURE_PREFIX):
            raise WebhookAuthenticationError("authorize", "unsupported signature algorithm")
        if not verify_hex_signature(
            config.credentials["signature_key"],
            request.body,
            signature[len(SIGNATURE_PREFIX):],
            hashlib.sha512,
        ):
            raise WebhookAuthenticationError("authorize", "signature mismatch")
        try:
            payload = json.loads(request.body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise WebhookPayloadError("authorize", "body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise WebhookPayloadError("authorize", "body is not a JSON object")
        return payload

    def parse_webhook_event(self, payload: Any, config: ProviderConfig) -> NormalizedWebhookEvent:
        event_type = payload.get("eventType", "")
        body = payload.get("payload") or {}
        transaction_id = body.get("id")
        currency = self._currency(config)
        raw_amount = body.get("authAmount")
        amount = to_minor_units(raw_amount, currency) if raw_amount is not None else None

        if event_type in _SUCCEEDED_EVENTS:
            kind = WebhookEventKind.PAYMENT_SUCCEEDED
        elif event_type == "net.authorize.payment.fraud.declined":
            kind = WebhookEventKind.PAYMENT_FAILED
        elif event_type == "net.authorize.payment.refund.created":
            kind = WebhookEventKind.REFUND_COMPLETED
        elif event_type == "net.authorize.payment.void.created":
            kind = WebhookEventKind.VOID_COMPLETED
        else:
            kind = WebhookEventKind.UNRECOGNIZED

        if kind != WebhookEventKind.UNRECOGNIZED and not transaction_id:
            kind = WebhookEventKind.UNRECOGNIZED

        return NormalizedWebhookEvent(
            kind=kind,
            provider_event_type=event_type,
            external_id=str(transaction_id) if transaction_id else None,
            amount=amount,
            currency=currency,
            metadata={
                "notification_id": payload.get("notificationId"),
                "invoice_number": body.get("invoiceNumber"),
            },
        )
