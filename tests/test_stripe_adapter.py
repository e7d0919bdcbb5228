"""
Tests for the Stripe adapter
"""
import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    ProviderDeclinedError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
    WebhookAuthenticationError,
    WebhookPayloadError,
)
from app.db.models.transaction import PaymentProvider, TransactionStatus, TransactionType
from app.domain.services.ledger_service import LedgerService
from app.domain.services.payments.base_adapter import (
    InboundWebhook,
    PaymentStatus,
    ProviderConfig,
    WebhookEventKind,
)
from app.domain.services.payments.stripe_adapter import StripeAdapter
from tests.conftest import DEFAULT_CREDENTIALS, TENANT_ID

WEBHOOK_SECRET = DEFAULT_CREDENTIALS[PaymentProvider.STRIPE]["webhook_secret"]


def _intent_data(status="succeeded", **overrides):
    intent = {
        "id": "pi_123",
        "object": "payment_intent",
        "amount": 1999,
        "amount_received": 1999 if status == "succeeded" else 0,
        "currency": "usd",
        "status": status,
        "client_secret": "pi_123_secret_abc",
        "metadata": {},
    }
    intent.update(overrides)
    return intent


def _intent(status="succeeded", **overrides) -> stripe.PaymentIntent:
    """What the SDK hands back: a StripeObject, not a dict"""
    return stripe.PaymentIntent.construct_from(_intent_data(status, **overrides), "sk_test_123")


def _stripe_signature(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{body.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _config() -> ProviderConfig:
    return ProviderConfig(
        tenant_id=TENANT_ID,
        credentials=dict(DEFAULT_CREDENTIALS[PaymentProvider.STRIPE]),
        test_mode=True,
    )


@pytest.fixture
async def stripe_enabled(payment_settings_factory):
    return await payment_settings_factory(PaymentProvider.STRIPE)


class TestStripeCharge:

    @pytest.mark.integration
    async def test_charge_with_source_records_payment(self, db_session: AsyncSession, stripe_enabled):
        adapter = StripeAdapter(db_session, TENANT_ID)

        with patch("stripe.PaymentIntent.create", return_value=_intent()) as mock_create:
            result = await adapter.charge(
                1999, "USD", {"source": "pm_card_visa", "customer_email": "payer@example.com"}
            )

        assert result.status == PaymentStatus.SUCCEEDED
        assert result.amount == 1999
        assert result.currency == "USD"
        params = mock_create.call_args.kwargs
        assert params["amount"] == 1999
        assert params["currency"] == "usd"
        assert params["confirm"] is True
        assert params["api_key"] == "sk_test_123"
        assert params["metadata"]["tenant_id"] == TENANT_ID

        tx = await LedgerService(db_session).get_transaction(PaymentProvider.STRIPE, "pi_123")
        assert tx.status == TransactionStatus.SUCCEEDED
        assert tx.amount == 1999
        assert tx.customer_email == "payer@example.com"

    @pytest.mark.integration
    async def test_charge_without_source_returns_client_secret(self, db_session: AsyncSession, stripe_enabled):
        adapter = StripeAdapter(db_session, TENANT_ID)

        with patch(
            "stripe.PaymentIntent.create",
            return_value=_intent(status="requires_payment_method"),
        ):
            result = await adapter.charge(1999, "USD", {})

        assert result.status == PaymentStatus.PENDING
        assert result.metadata["client_secret"] == "pi_123_secret_abc"
        assert await LedgerService(db_session).get_transaction(PaymentProvider.STRIPE, "pi_123") is None

    @pytest.mark.integration
    async def test_charge_needing_3ds_is_not_recorded(self, db_session: AsyncSession, stripe_enabled):
        adapter = StripeAdapter(db_session, TENANT_ID)
        next_action = {"type": "use_stripe_sdk", "use_stripe_sdk": {"type": "three_d_secure_redirect"}}

        with patch(
            "stripe.PaymentIntent.create",
            return_value=_intent(status="requires_action", next_action=next_action),
        ):
            result = await adapter.charge(1999, "USD", {"source": "pm_card_threeDSecure2Required"})

        assert result.status == PaymentStatus.PENDING
        assert result.metadata["client_secret"] == "pi_123_secret_abc"
        assert result.metadata["next_action"] == next_action
        assert await LedgerService(db_session).get_transaction(PaymentProvider.STRIPE, "pi_123") is None

    @pytest.mark.integration
    async def test_processing_charge_recorded_pending(self, db_session: AsyncSession, stripe_enabled):
        adapter = StripeAdapter(db_session, TENANT_ID)

        with patch("stripe.PaymentIntent.create", return_value=_intent(status="processing")):
            result = await adapter.charge(1999, "USD", {"source": "pm_sepa_debit"})

        assert result.status == PaymentStatus.PENDING
        tx = await LedgerService(db_session).get_transaction(PaymentProvider.STRIPE, "pi_123")
        assert tx.status == TransactionStatus.PENDING

    @pytest.mark.integration
    async def test_card_decline(self, db_session: AsyncSession, stripe_enabled):
        adapter = StripeAdapter(db_session, TENANT_ID)
        error = stripe.CardError("Your card was declined.", None, "card_declined")

        with patch("stripe.PaymentIntent.create", side_effect=error):
            with pytest.raises(ProviderDeclinedError) as exc_info:
                await adapter.charge(1999, "USD", {"source": "pm_card_chargeDeclined"})

        assert exc_info.value.details["code"] == "card_declined"

    @pytest.mark.integration
    async def test_connection_error_is_transient(self, db_session: AsyncSession, stripe_enabled):
        adapter = StripeAdapter(db_session, TENANT_ID)

        with patch("stripe.PaymentIntent.create", side_effect=stripe.APIConnectionError("reset")):
            with pytest.raises(ProviderUnavailableError):
                await adapter.charge(1999, "USD", {"source": "pm_card_visa"})

    @pytest.mark.integration
    async def test_not_configured(self, db_session: AsyncSession):
        adapter = StripeAdapter(db_session, TENANT_ID)

        with pytest.raises(ProviderNotConfiguredError):
            await adapter.charge(1999, "USD", {"source": "pm_card_visa"})

    @pytest.mark.integration
    async def test_missing_secret_key(self, db_session: AsyncSession, payment_settings_factory):
        await payment_settings_factory(PaymentProvider.STRIPE, credentials={"publishable_key": "pk"})
        adapter = StripeAdapter(db_session, TENANT_ID)

        with pytest.raises(ProviderNotConfiguredError) as exc_info:
            await adapter.charge(1999, "USD", {"source": "pm_card_visa"})

        assert exc_info.value.details["missing"] == ["secret_key"]


class TestStripeOtherOperations:

    @pytest.mark.integration
    async def test_authorize_only_does_not_record(self, db_session: AsyncSession, stripe_enabled):
        adapter = StripeAdapter(db_session, TENANT_ID)

        with patch(
            "stripe.PaymentIntent.create", return_value=_intent(status="requires_capture")
        ) as mock_create:
            result = await adapter.authorize_only(1999, "USD", {"source": "pm_card_visa"})

        assert result.status == PaymentStatus.AUTHORIZED
        assert mock_create.call_args.kwargs["capture_method"] == "manual"
        assert await LedgerService(db_session).get_transaction(PaymentProvider.STRIPE, "pi_123") is None

    @pytest.mark.integration
    async def test_partial_capture(self, db_session: AsyncSession, stripe_enabled):
        adapter = StripeAdapter(db_session, TENANT_ID)

        with patch(
            "stripe.PaymentIntent.capture",
            return_value=_intent(amount_received=1500),
        ) as mock_capture:
            result = await adapter.capture("pi_123", 1500, "USD", {})

        assert mock_capture.call_args.args == ("pi_123",)
        assert mock_capture.call_args.kwargs["amount_to_capture"] == 1500
        assert result.amount == 1500
        tx = await LedgerService(db_session).get_transaction(PaymentProvider.STRIPE, "pi_123")
        assert tx.type == TransactionType.CAPTURE
        assert tx.amount == 1500

    @pytest.mark.integration
    async def test_partial_refund(self, db_session: AsyncSession, stripe_enabled):
        adapter = StripeAdapter(db_session, TENANT_ID)
        refund = stripe.Refund.construct_from(
            {"id": "re_1", "object": "refund", "amount": 500, "currency": "usd", "status": "succeeded"},
            "sk_test_123",
        )

        with patch("stripe.Refund.create", return_value=refund) as mock_refund:
            result = await adapter.refund("pi_123", 500, "USD", {"reason": "requested_by_customer"})

        assert mock_refund.call_args.kwargs["payment_intent"] == "pi_123"
        assert mock_refund.call_args.kwargs["amount"] == 500
        assert result.status == PaymentStatus.REFUNDED
        tx = await LedgerService(db_session).get_transaction(PaymentProvider.STRIPE, "re_1")
        assert tx.status == TransactionStatus.REFUNDED
        assert tx.type == TransactionType.REFUND

    @pytest.mark.integration
    async def test_void_records_void_row(self, db_session: AsyncSession, stripe_enabled):
        adapter = StripeAdapter(db_session, TENANT_ID)

        with patch("stripe.PaymentIntent.cancel", return_value=_intent(status="canceled")):
            result = await adapter.void("pi_123", {})

        assert result.status == PaymentStatus.VOIDED
        tx = await LedgerService(db_session).get_transaction(PaymentProvider.STRIPE, "pi_123:void")
        assert tx.type == TransactionType.VOID
        assert tx.status == TransactionStatus.SUCCEEDED

    @pytest.mark.integration
    async def test_get_status(self, db_session: AsyncSession, stripe_enabled):
        adapter = StripeAdapter(db_session, TENANT_ID)

        with patch("stripe.PaymentIntent.retrieve", return_value=_intent(status="processing")):
            result = await adapter.get_status("pi_123")

        assert result.status == PaymentStatus.PENDING

    @pytest.mark.integration
    async def test_test_connection(self, db_session: AsyncSession, stripe_enabled):
        adapter = StripeAdapter(db_session, TENANT_ID)

        balance = stripe.Balance.construct_from({"object": "balance", "livemode": False}, "sk_test_123")

        with patch("stripe.Balance.retrieve", return_value=balance) as mock_balance:
            status = await adapter.test_connection()

        assert status.success is True
        assert status.test_mode is True
        assert mock_balance.call_args.kwargs["api_key"] == "sk_test_123"

    @pytest.mark.integration
    async def test_client_token(self, db_session: AsyncSession, stripe_enabled):
        token = await StripeAdapter(db_session, TENANT_ID).client_token()

        assert token == {"publishable_key": "pk_test_123"}


class TestStripeWebhooks:

    def _event(self, event_type: str, obj: dict) -> bytes:
        return json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }).encode()

    @pytest.mark.unit
    async def test_valid_signature(self, db_session: AsyncSession):
        body = self._event("payment_intent.succeeded", _intent_data())
        request = InboundWebhook(
            body=body, headers={"Stripe-Signature": _stripe_signature(body)}, url="https://x"
        )
        adapter = StripeAdapter(db_session, TENANT_ID)

        payload = await adapter.verify_webhook(request, _config())
        event = adapter.parse_webhook_event(payload, _config())

        assert event.kind == WebhookEventKind.PAYMENT_SUCCEEDED
        assert event.external_id == "pi_123"
        assert event.amount == 1999
        assert event.currency == "USD"

    @pytest.mark.unit
    @pytest.mark.parametrize("signature", [
        None,
        "t=1,v1=deadbeef",
    ])
    async def test_rejected_signatures(self, db_session: AsyncSession, signature):
        body = self._event("payment_intent.succeeded", _intent_data())
        headers = {"Stripe-Signature": signature} if signature else {}
        adapter = StripeAdapter(db_session, TENANT_ID)

        with pytest.raises(WebhookAuthenticationError):
            await adapter.verify_webhook(InboundWebhook(body, headers, "https://x"), _config())

    @pytest.mark.unit
    async def test_wrong_secret(self, db_session: AsyncSession):
        body = self._event("payment_intent.succeeded", _intent_data())
        headers = {"Stripe-Signature": _stripe_signature(body, secret="whsec_other")}
        adapter = StripeAdapter(db_session, TENANT_ID)

        with pytest.raises(WebhookAuthenticationError):
            await adapter.verify_webhook(InboundWebhook(body, headers, "https://x"), _config())

    @pytest.mark.unit
    @pytest.mark.parametrize("event_type,obj,kind,external_id", [
        ("payment_intent.payment_failed", _intent_data(status="requires_payment_method"),
         WebhookEventKind.PAYMENT_FAILED, "pi_123"),
        ("payment_intent.canceled", _intent_data(status="canceled"),
         WebhookEventKind.VOID_COMPLETED, "pi_123"),
        ("refund.created", {"id": "re_1", "amount": 500, "currency": "usd", "status": "succeeded"},
         WebhookEventKind.REFUND_COMPLETED, "re_1"),
        ("charge.refunded", {"id": "ch_1", "currency": "usd", "amount_refunded": 1999,
                             "refunds": {"data": [{"id": "re_2", "amount": 1999}]}},
         WebhookEventKind.REFUND_COMPLETED, "re_2"),
        ("customer.created", {"id": "cus_1"}, WebhookEventKind.UNRECOGNIZED, None),
    ])
    def test_event_mapping(self, db_session: AsyncSession, event_type, obj, kind, external_id):
        adapter = StripeAdapter(db_session, TENANT_ID)
        payload = {"type": event_type, "data": {"object": obj}}

        event = adapter.parse_webhook_event(payload, _config())

        assert event.kind == kind
        assert event.external_id == external_id
        assert event.provider_event_type == event_type

    @pytest.mark.unit
    @pytest.mark.parametrize("body", [b"[]", b'{"id": "evt_1", "object": "event"}'])
    async def test_signed_body_must_be_event_object(self, db_session: AsyncSession, body):
        request = InboundWebhook(body, {"Stripe-Signature": _stripe_signature(body)}, "https://x")

        with pytest.raises(WebhookPayloadError):
            await StripeAdapter(db_session, TENANT_ID).verify_webhook(request, _config())

    @pytest.mark.unit
    def test_sdk_event_object(self, db_session: AsyncSession):
        adapter = StripeAdapter(db_session, TENANT_ID)
        event = stripe.Event.construct_from(
            {
                "id": "evt_1",
                "object": "event",
                "type": "payment_intent.succeeded",
                "data": {"object": _intent_data(receipt_email="payer@example.com")},
            },
            "sk_test_123",
        )

        parsed = adapter.parse_webhook_event(event, _config())

        assert parsed.kind == WebhookEventKind.PAYMENT_SUCCEEDED
        assert parsed.amount == 1999
        assert parsed.customer_email == "payer@example.com"

    @pytest.mark.unit
    def test_charge_refunded_without_refund_list(self, db_session: AsyncSession):
        adapter = StripeAdapter(db_session, TENANT_ID)
        payload = {
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "currency": "usd", "amount_refunded": 1999}},
        }

        assert adapter.parse_webhook_event(payload, _config()).kind == WebhookEventKind.UNRECOGNIZED

    @pytest.mark.unit
    def test_pending_refund_is_not_completion(self, db_session: AsyncSession):
        adapter = StripeAdapter(db_session, TENANT_ID)
        payload = {"type": "refund.created", "data": {"object": {"id": "re_1", "status": "pending"}}}

        assert adapter.parse_webhook_event(payload, _config()).kind == WebhookEventKind.UNRECOGNIZED
