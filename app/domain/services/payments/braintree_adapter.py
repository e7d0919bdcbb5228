"""
Braintree adapter - GraphQL payments API over httpx.

Amounts travel as decimal major-unit strings and are converted at this
boundary. The ledger is keyed by the legacy transaction id, which is the id
Braintree puts in its webhook notifications; mutations translate it back to
a GraphQL global id first.

Charges submit for settlement and are recorded pending. They become
succeeded when the transaction_settled webhook arrives.

Webhooks: form-encoded `bt_signature` / `bt_payload`. The signature is
`<public_key>|<hex HMAC-SHA1>` of the payload, keyed with SHA1(private_key);
the payload is base64 XML.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from typing import Any
from urllib.parse import parse_qs
from xml.etree import ElementTree

from app.core.exceptions import (
    ProviderDeclinedError,
    ProviderError,
    ProviderUnavailableError,
    UnsupportedOperationError,
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
    void_external_id,
)
from app.domain.services.payments.http_client import decode_json, send_provider_request

logger = get_logger(__name__)

SANDBOX_GRAPHQL_URL = "https://payments.sandbox.braintree-api.com/graphql"
LIVE_GRAPHQL_URL = "https://payments.braintree-api.com/graphql"
BRAINTREE_VERSION = "2019-01-01"

# base64("transaction_"), the prefix of every transaction global id
GLOBAL_ID_PREFIX = "dHJhbnNhY3Rpb25f"

_TRANSACTION_FIELDS = "id legacyId status amount { value currencyCode } orderId"

_STATUS = {
    "SETTLED": PaymentStatus.SUCCEEDED,
    "SETTLEMENT_CONFIRMED": PaymentStatus.SUCCEEDED,
    "SUBMITTED_FOR_SETTLEMENT": PaymentStatus.PENDING,
    "SETTLING": PaymentStatus.PENDING,
    "SETTLEMENT_PENDING": PaymentStatus.PENDING,
    "AUTHORIZING": PaymentStatus.PENDING,
    "AUTHORIZED": PaymentStatus.AUTHORIZED,
    "VOIDED": PaymentStatus.VOIDED,
    "AUTHORIZATION_EXPIRED": PaymentStatus.FAILED,
    "PROCESSOR_DECLINED": PaymentStatus.FAILED,
    "GATEWAY_REJECTED": PaymentStatus.FAILED,
    "SETTLEMENT_DECLINED": PaymentStatus.FAILED,
    "FAILED": PaymentStatus.FAILED,
}

_DECLINED_STATUSES = {"PROCESSOR_DECLINED", "GATEWAY_REJECTED", "FAILED"}
_UNAVAILABLE_ERROR_CLASSES = {"INTERNAL", "SERVICE_AVAILABILITY", "RESOURCE_LIMIT"}

CHARGE_MUTATION = f"""
mutation Charge($input: ChargePaymentMethodInput!) {{
  chargePaymentMethod(input: $input) {{ transaction {{ {_TRANSACTION_FIELDS} }} }}
}}
"""

AUTHORIZE_MUTATION = f"""
mutation Authorize($input: AuthorizePaymentMethodInput!) {{
  authorizePaymentMethod(input: $input) {{ transaction {{ {_TRANSACTION_FIELDS} }} }}
}}
"""

CAPTURE_MUTATION = f"""
mutation Capture($input: CaptureTransactionInput!) {{
  captureTransaction(input: $input) {{ transaction {{ {_TRANSACTION_FIELDS} }} }}
}}
"""

REFUND_MUTATION = f"""
mutation Refund($input: RefundTransactionInput!) {{
  refundTransaction(input: $input) {{ refund {{ {_TRANSACTION_FIELDS} }} }}
}}
"""

REVERSE_MUTATION = f"""
mutation Reverse($input: ReverseTransactionInput!) {{
  reverseTransaction(input: $input) {{
    reversal {{
      __typename
      ... on Transaction {{ {_TRANSACTION_FIELDS} }}
      ... on Refund {{ id legacyId status }}
    }}
  }}
}}
"""

TRANSACTION_QUERY = f"""
query Transaction($id: ID!) {{
  node(id: $id) {{ ... on Transaction {{ {_TRANSACTION_FIELDS} }} }}
}}
"""

ID_FROM_LEGACY_QUERY = """
query GlobalId($legacyId: ID!) {
  idFromLegacyId(legacyId: $legacyId, type: TRANSACTION)
}
"""

PING_QUERY = "query { ping }"

CLIENT_TOKEN_MUTATION = """
mutation ClientToken($input: CreateClientTokenInput) {
  createClientToken(input: $input) { clientToken }
}
"""


def _ledger_id(transaction: dict[str, Any]) -> str:
    return transaction.get("legacyId") or transaction["id"]


def _minor(transaction: dict[str, Any], fallback_currency: str) -> tuple[int | None, str]:
    money = transaction.get("amount") or {}
    currency = normalize_currency(money.get("currencyCode"), fallback_currency)
    if money.get("value") is None:
        return None, currency
    return to_minor_units(money["value"], currency), currency


def _text(element: ElementTree.Element | None, path: str) -> str | None:
    if element is None:
        return None
    found = element.find(path)
    return found.text if found is not None and found.text else None


class BraintreeAdapter(BasePaymentAdapter):
    provider = PaymentProvider.BRAINTREE
    required_credentials = ("merchant_id", "public_key", "private_key")
    webhook_credentials = ("public_key", "private_key")

    @staticmethod
    def _url(config: ProviderConfig) -> str:
        return SANDBOX_GRAPHQL_URL if config.test_mode else LIVE_GRAPHQL_URL

    async def _graphql(
        self,
        config: ProviderConfig,
        query: str,
        variables: dict[str, Any] | None = None,
        *,
        operation: str,
    ) -> dict[str, Any]:
        async def _send() -> dict[str, Any]:
            response = await send_provider_request(
                "braintree",
                "POST",
                self._url(config),
                operation=operation,
                auth=(config.credentials["public_key"], config.credentials["private_key"]),
                json={"query": query, "variables": variables or {}},
                headers={
                    "Braintree-Version": BRAINTREE_VERSION,
                    "Content-Type": "application/json",
                },
            )
            body = decode_json("braintree", operation, response)
            if response.status_code >= 400:
                raise ProviderError.from_response("braintree", operation, response)
            errors = body.get("errors") or []
            if errors:
                first = errors[0]
                extensions = first.get("extensions") or {}
                message = first.get("message") or "request failed"
                legacy_code = str(extensions.get("legacyCode") or "")
                if extensions.get("errorClass") in _UNAVAILABLE_ERROR_CLASSES:
                    raise ProviderUnavailableError("braintree", message)
                if len(legacy_code) == 4 and legacy_code.startswith(("2", "3")):
                    # processor (2xxx) and settlement (3xxx) response codes are declines
                    raise ProviderDeclinedError(
                        "braintree", message, details={"code": legacy_code}
                    )
                raise ProviderError(
                    "braintree",
                    message,
                    details={"operation": operation, "error_class": extensions.get("errorClass")},
                )
            return body.get("data") or {}

        return await self._call(_send)

    async def _global_id(self, config: ProviderConfig, transaction_id: str) -> str:
        if transaction_id.startswith(GLOBAL_ID_PREFIX):
            return transaction_id
        data = await self._graphql(
            config,
            ID_FROM_LEGACY_QUERY,
            {"legacyId": transaction_id},
            operation="id_from_legacy_id",
        )
        return data["idFromLegacyId"]

    def _result(self, transaction: dict[str, Any], currency: str) -> AdapterResult:
        amount, currency = _minor(transaction, currency)
        return AdapterResult(
            transaction_id=_ledger_id(transaction),
            status=_STATUS.get(transaction.get("status"), PaymentStatus.PENDING),
            amount=amount,
            currency=currency,
            metadata={
                "braintree_status": transaction.get("status"),
                "graphql_id": transaction.get("id"),
            },
        )

    def _payment_input(
        self, amount: int, currency: str, options: dict[str, Any], operation: str
    ) -> dict[str, Any]:
        source = options.get("source")
        if not source:
            raise UnsupportedOperationError(
                "braintree", operation,
                "Braintree payments require a source (payment method nonce or id)",
            )
        transaction: dict[str, Any] = {"amount": format_major(amount, currency)}
        if options.get("order_id"):
            transaction["orderId"] = options["order_id"]
        if options.get("merchant_account_id"):
            transaction["merchantAccountId"] = options["merchant_account_id"]
        return {"paymentMethodId": source, "transaction": transaction}

    def _check_declined(self, transaction: dict[str, Any]) -> None:
        if transaction.get("status") in _DECLINED_STATUSES:
            raise ProviderDeclinedError(
                "braintree",
                f"transaction {transaction.get('status', '').lower()}",
                details={"transaction_id": _ledger_id(transaction)},
            )

    async def charge(self, amount: int, currency: str, options: dict[str, Any]) -> AdapterResult:
        config = await self.load_config()
        data = await self._graphql(
            config,
            CHARGE_MUTATION,
            {"input": self._payment_input(amount, currency, options, "charge")},
            operation="charge_payment_method",
        )
        transaction = data["chargePaymentMethod"]["transaction"]
        self._check_declined(transaction)
        result = self._result(transaction, currency)

        await self._record(
            external_id=result.transaction_id,
            amount=result.amount if result.amount is not None else amount,
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
        return result

    async def authorize_only(
        self, amount: int, currency: str, options: dict[str, Any]
    ) -> AdapterResult:
        config = await self.load_config()
        data = await self._graphql(
            config,
            AUTHORIZE_MUTATION,
            {"input": self._payment_input(amount, currency, options, "authorize_only")},
            operation="authorize_payment_method",
        )
        transaction = data["authorizePaymentMethod"]["transaction"]
        self._check_declined(transaction)
        return self._result(transaction, currency)

    async def capture(
        self,
        transaction_id: str,
        amount: int | None,
        currency: str,
        options: dict[str, Any],
    ) -> AdapterResult:
        config = await self.load_config()
        capture_input: dict[str, Any] = {
            "transactionId": await self._global_id(config, transaction_id)
        }
        if amount is not None:
            capture_input["transaction"] = {"amount": format_major(amount, currency)}
        data = await self._graphql(
            config, CAPTURE_MUTATION, {"input": capture_input}, operation="capture_transaction"
        )
        transaction = data["captureTransaction"]["transaction"]
        result = self._result(transaction, currency)

        # submitted for settlement; settles later via webhook
        await self._record(
            external_id=result.transaction_id,
            amount=result.amount if result.amount is not None else (amount or 0),
            currency=result.currency,
            status=(
                TransactionStatus.SUCCEEDED
                if result.status == PaymentStatus.SUCCEEDED
                else TransactionStatus.PENDING
            ),
            transaction_type=TransactionType.CAPTURE,
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
        refund_input: dict[str, Any] = {
            "transactionId": await self._global_id(config, transaction_id)
        }
        if amount is not None:
            refund_input["refund"] = {"amount": format_major(amount, currency)}
        data = await self._graphql(
            config, REFUND_MUTATION, {"input": refund_input}, operation="refund_transaction"
        )
        refund = data["refundTransaction"]["refund"]
        self._check_declined(refund)
        refunded, refund_currency = _minor(refund, currency)
        refund_id = _ledger_id(refund)

        await self._record(
            external_id=refund_id,
            amount=refunded if refunded is not None else (amount or 0),
            currency=refund_currency,
            status=TransactionStatus.REFUNDED,
            transaction_type=TransactionType.REFUND,
            metadata={"payment_id": transaction_id},
        )
        return AdapterResult(
            transaction_id=refund_id,
            status=PaymentStatus.REFUNDED,
            amount=refunded if refunded is not None else amount,
            currency=refund_currency,
            metadata={"payment_id": transaction_id, "braintree_status": refund.get("status")},
        )

    async def void(self, transaction_id: str, options: dict[str, Any]) -> AdapterResult:
        config = await self.load_config()
        data = await self._graphql(
            config,
            REVERSE_MUTATION,
            {"input": {"transactionId": await self._global_id(config, transaction_id)}},
            operation="reverse_transaction",
        )
        reversal = data["reverseTransaction"]["reversal"]
        if reversal.get("__typename") != "Transaction" or reversal.get("status") != "VOIDED":
            # a settled transaction is reversed by a refund, which void must not do
            raise UnsupportedOperationError(
                "braintree", "void", "transaction is already settled; refund it instead"
            )
        result = self._result(reversal, normalize_currency(options.get("currency")))
        await self._record(
            external_id=void_external_id(result.transaction_id),
            amount=result.amount or 0,
            currency=result.currency,
            status=TransactionStatus.SUCCEEDED,
            transaction_type=TransactionType.VOID,
            metadata={"authorization_id": result.transaction_id},
        )
        return result

    async def get_status(self, transaction_id: str) -> AdapterResult:
        config = await self.load_config()
        data = await self._graphql(
            config,
            TRANSACTION_QUERY,
            {"id": await self._global_id(config, transaction_id)},
            operation="find_transaction",
        )
        transaction = data.get("node")
        if not transaction:
            raise ProviderError(
                "braintree", f"transaction {transaction_id} not found",
                details={"operation": "find_transaction"},
            )
        return self._result(transaction, "USD")

    async def test_connection(self) -> ConnectionStatus:
        config = await self.load_config()
        data = await self._graphql(config, PING_QUERY, operation="ping")
        if data.get("ping") != "pong":
            return ConnectionStatus(
                success=False, message="Unexpected ping response", test_mode=config.test_mode
            )
        return ConnectionStatus(
            success=True,
            message=f"Connected to Braintree merchant {config.credentials['merchant_id']}",
            test_mode=config.test_mode,
        )

    async def client_token(self) -> dict[str, Any]:
        config = await self.load_config()
        token_input: dict[str, Any] = {}
        if config.credentials.get("merchant_account_id"):
            token_input["clientToken"] = {
                "merchantAccountId": config.credentials["merchant_account_id"]
            }
        data = await self._graphql(
            config, CLIENT_TOKEN_MUTATION, {"input": token_input}, operation="client_token"
        )
        return {"client_token": data["createClientToken"]["clientToken"]}

    async def verify_webhook(self, request: InboundWebhook, config: ProviderConfig) -> Any:
        try:
            form = parse_qs(request.body.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise WebhookPayloadError("braintree", "body is not form encoded") from e
        signature = (form.get("bt_signature") or [None])[0]
        payload = (form.get("bt_payload") or [None])[0]
        if not signature or not payload:
            raise WebhookAuthenticationError("braintree", "missing bt_signature or bt_payload")

        public_key = config.credentials["public_key"]
        candidate = None
        for pair in signature.split("&"):
            if "|" in pair:
                key, value = pair.split("|", 1)
                if key == public_key:
                    candidate = value
                    break
        if candidate is None:
            raise WebhookAuthenticationError("braintree", "no signature for this public key")

        secret = hashlib.sha1(config.credentials["private_key"].encode("utf-8")).digest()
        expected = hmac.new(secret, payload.encode("utf-8"), hashlib.sha1).hexdigest()
        if not hmac.compare_digest(candidate.strip().lower(), expected):
            raise WebhookAuthenticationError("braintree", "signature mismatch")

        try:
            return ElementTree.fromstring(base64.b64decode(payload))
        except (binascii.Error, ElementTree.ParseError) as e:
            raise WebhookPayloadError("braintree", "bt_payload is not base64 XML") from e

    def parse_webhook_event(self, payload: Any, config: ProviderConfig) -> NormalizedWebhookEvent:
        kind = _text(payload, "kind") or ""
        transaction = payload.find("subject/transaction")
        transaction_id = _text(transaction, "id")
        if transaction_id is None or kind not in (
            "transaction_settled", "transaction_settlement_declined"
        ):
            return NormalizedWebhookEvent(kind=WebhookEventKind.UNRECOGNIZED, provider_event_type=kind)

        currency = normalize_currency(_text(transaction, "currency-iso-code"))
        raw_amount = _text(transaction, "amount")
        amount = to_minor_units(raw_amount, currency) if raw_amount else None
        is_credit = _text(transaction, "type") == "credit"

        if kind == "transaction_settled":
            event_kind = (
                WebhookEventKind.REFUND_COMPLETED if is_credit else WebhookEventKind.PAYMENT_SUCCEEDED
            )
        else:
            event_kind = WebhookEventKind.PAYMENT_FAILED

        return NormalizedWebhookEvent(
            kind=event_kind,
            provider_event_type=kind,
            external_id=transaction_id,
            amount=amount,
            currency=currency,
            customer_email=_text(transaction, "customer/email"),
            metadata={"braintree_status": _text(transaction, "status")},
        )
