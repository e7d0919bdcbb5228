"""
Tests for the gateway router: resolution, dispatch and outcome normalization
"""
from unittest.mock import patch

import pytest
import stripe
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import LedgerConsistencyError, PaymentException, UnknownProviderError
from app.db.models.transaction import PaymentProvider
from app.domain.services.ledger_service import LedgerService
from app.domain.services.payments.gateway_router import (
    NO_GATEWAY_ENABLED,
    GatewayRouter,
    PaymentResult,
)
from tests.conftest import TENANT_ID

CARD_OPTIONS = {
    PaymentProvider.STRIPE: {"source": "pm_card_visa"},
    PaymentProvider.PAYPAL: {"source": "VAULT-1"},
    PaymentProvider.SQUARE: {"source": "cnon:card-nonce-ok"},
    PaymentProvider.BRAINTREE: {"source": "fake-valid-nonce"},
    PaymentProvider.AUTHORIZE: {"card": {"number": "4111111111111111", "expiration": "2030-12"}},
}


def _stripe_intent(status="succeeded") -> stripe.PaymentIntent:
    return stripe.PaymentIntent.construct_from(
        {
            "id": "pi_123",
            "object": "payment_intent",
            "amount": 1999,
            "amount_received": 1999 if status == "succeeded" else 0,
            "currency": "usd",
            "status": status,
            "client_secret": "pi_123_secret_abc",
        },
        "sk_test_123",
    )


def _register_successful_charge(provider: PaymentProvider, provider_http) -> str:
    """Wire the fake transport for a settled 19.99 USD charge; returns the ledger id"""
    if provider == PaymentProvider.PAYPAL:
        provider_http.add("POST", "/v1/oauth2/token", body={"access_token": "token"})
        provider_http.add("POST", "/v2/checkout/orders", status_code=201, body={
            "id": "ORDER-1",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{
                "id": "CAPTURE-1", "status": "COMPLETED",
                "amount": {"currency_code": "USD", "value": "19.99"},
            }]}}],
        })
        return "CAPTURE-1"
    if provider == PaymentProvider.SQUARE:
        provider_http.add("POST", "/v2/payments", body={"payment": {
            "id": "sq_pay_1", "status": "COMPLETED", "amount_money": {"amount": 1999, "currency": "USD"},
        }})
        return "sq_pay_1"
    if provider == PaymentProvider.BRAINTREE:
        provider_http.add("POST", "graphql", body={"data": {"chargePaymentMethod": {"transaction": {
            "id": "dHJhbnNhY3Rpb25fYWJj", "legacyId": "abc", "status": "SETTLED",
            "amount": {"value": "19.99", "currencyCode": "USD"},
        }}}})
        return "abc"
    if provider == PaymentProvider.AUTHORIZE:
        provider_http.add("POST", "authorize.net", body={
            "transactionResponse": {"responseCode": "1", "transId": "60000000001"},
            "messages": {"resultCode": "Ok", "message": []},
        })
        return "60000000001"
    return "pi_123"


class TestGatewayResolution:

    @pytest.mark.integration
    async def test_no_gateway_enabled(self, db_session: AsyncSession):
        result = await GatewayRouter(db_session).process(TENANT_ID, None, "charge", 1999, "USD")

        assert result.success is False
        assert result.provider is None
        assert result.error == NO_GATEWAY_ENABLED

    @pytest.mark.integration
    async def test_default_gateway_precedence(self, db_session: AsyncSession, payment_settings_factory):
        await payment_settings_factory(PaymentProvider.AUTHORIZE)
        await payment_settings_factory(PaymentProvider.SQUARE)
        await payment_settings_factory(PaymentProvider.STRIPE, enabled=False)
        router = GatewayRouter(db_session)

        assert await router.default_gateway(TENANT_ID) == PaymentProvider.SQUARE

        await payment_settings_factory(PaymentProvider.BRAINTREE)
        assert await router.default_gateway(TENANT_ID) == PaymentProvider.BRAINTREE

    @pytest.mark.integration
    async def test_enabled_gateways(self, db_session: AsyncSession, payment_settings_factory):
        await payment_settings_factory(PaymentProvider.PAYPAL)
        await payment_settings_factory(PaymentProvider.PAYPAL, tenant_id="tenant-2", enabled=False)

        gateways = await GatewayRouter(db_session).enabled_gateways(TENANT_ID)

        assert gateways == {
            "stripe": False, "paypal": True, "braintree": False, "square": False, "authorize": False,
        }

    @pytest.mark.integration
    async def test_disabled_named_gateway(self, db_session: AsyncSession, payment_settings_factory):
        await payment_settings_factory(PaymentProvider.STRIPE, enabled=False)

        result = await GatewayRouter(db_session).process(TENANT_ID, "stripe", "charge", 1999, "USD")

        assert result.success is False
        assert result.provider == "stripe"
        assert "not enabled" in result.error

    @pytest.mark.integration
    async def test_unknown_provider(self, db_session: AsyncSession):
        result = await GatewayRouter(db_session).process(TENANT_ID, "venmo", "charge", 1999, "USD")

        assert result.success is False
        assert "Unknown payment provider" in result.error


class TestOperationValidation:

    @pytest.mark.integration
    async def test_unsupported_operation(self, db_session: AsyncSession, payment_settings_factory):
        await payment_settings_factory(PaymentProvider.STRIPE)

        result = await GatewayRouter(db_session).process(TENANT_ID, "stripe", "payout", 1999, "USD")

        assert result.success is False
        assert result.error == "Unsupported operation: payout"

    @pytest.mark.integration
    @pytest.mark.parametrize("operation", ["capture", "refund", "void", "status"])
    async def test_transaction_id_required(self, db_session: AsyncSession, payment_settings_factory, operation):
        await payment_settings_factory(PaymentProvider.STRIPE)

        result = await GatewayRouter(db_session).process(TENANT_ID, "stripe", operation)

        assert result.success is False
        assert result.error == f"transaction_id is required for {operation}"

    @pytest.mark.integration
    @pytest.mark.parametrize("amount", [None, 0, -5, 19.99])
    async def test_charge_amount_must_be_positive_int(self, db_session: AsyncSession, payment_settings_factory, amount):
        await payment_settings_factory(PaymentProvider.STRIPE)

        with patch("stripe.PaymentIntent.create") as mock_create:
            result = await GatewayRouter(db_session).process(TENANT_ID, "stripe", "charge", amount, "USD")

        assert result.success is False
        mock_create.assert_not_called()


class TestDispatch:

    @pytest.mark.integration
    @pytest.mark.parametrize("provider", list(PaymentProvider))
    async def test_charge_normalized_to_minor_units(
        self, db_session: AsyncSession, payment_settings_factory, provider_http, provider
    ):
        """19.99 USD is 1999 in the result and the ledger, whatever the gateway's native unit"""
        await payment_settings_factory(provider)
        external_id = _register_successful_charge(provider, provider_http)

        with patch("stripe.PaymentIntent.create", return_value=_stripe_intent()):
            result = await GatewayRouter(db_session).process(
                TENANT_ID, provider.value, "charge", 1999, "usd", CARD_OPTIONS[provider]
            )

        assert result.success is True, result.error
        assert result.provider == provider.value
        assert result.amount == 1999
        assert result.currency == "USD"

        tx = await LedgerService(db_session).get_transaction(provider, external_id)
        assert tx.amount == 1999
        assert tx.currency == "USD"
        assert tx.tenant_id == TENANT_ID

    @pytest.mark.integration
    async def test_client_side_stripe_charge_is_pending(self, db_session: AsyncSession, payment_settings_factory):
        await payment_settings_factory(PaymentProvider.STRIPE)

        with patch("stripe.PaymentIntent.create", return_value=_stripe_intent("requires_payment_method")):
            result = await GatewayRouter(db_session).process(TENANT_ID, "stripe", "charge", 1999, "USD", {})

        assert result.success is True, result.error
        assert result.status == "pending"
        assert result.metadata["client_secret"] == "pi_123_secret_abc"
        assert await LedgerService(db_session).get_transaction(PaymentProvider.STRIPE, "pi_123") is None

    @pytest.mark.integration
    async def test_follow_up_operation_passes_transaction_id(self, db_session: AsyncSession, payment_settings_factory):
        await payment_settings_factory(PaymentProvider.STRIPE)
        refund = stripe.Refund.construct_from(
            {"id": "re_1", "object": "refund", "amount": 1999, "currency": "usd", "status": "succeeded"},
            "sk_test_123",
        )

        with patch("stripe.Refund.create", return_value=refund) as mock_refund:
            result = await GatewayRouter(db_session).process(
                TENANT_ID, "stripe", "refund", None, "USD", {"transaction_id": "pi_123"}
            )

        assert result.success is True
        assert result.status == "refunded"
        assert mock_refund.call_args.kwargs["payment_intent"] == "pi_123"
        assert "amount" not in mock_refund.call_args.kwargs

    @pytest.mark.integration
    async def test_provider_error_becomes_failure(self, db_session: AsyncSession, payment_settings_factory, provider_http):
        await payment_settings_factory(PaymentProvider.SQUARE)
        provider_http.add("POST", "/v2/payments", status_code=503, body={"errors": [{"code": "SERVICE_UNAVAILABLE"}]})

        result = await GatewayRouter(db_session).process(
            TENANT_ID, "square", "charge", 1999, "USD", {"source": "cnon:ok"}
        )

        assert result.success is False
        assert result.status == "failed"
        assert result.provider == "square"

    @pytest.mark.integration
    async def test_unexpected_exception_becomes_failure(self, db_session: AsyncSession, payment_settings_factory):
        await payment_settings_factory(PaymentProvider.STRIPE)

        with patch("stripe.PaymentIntent.create", side_effect=KeyError("id")):
            result = await GatewayRouter(db_session).process(
                TENANT_ID, "stripe", "charge", 1999, "USD", {"source": "pm_card_visa"}
            )

        assert result.success is False

    @pytest.mark.integration
    async def test_open_circuit_short_circuits(self, db_session: AsyncSession, payment_settings_factory, provider_http):
        await payment_settings_factory(PaymentProvider.SQUARE)
        provider_http.add("POST", "/v2/payments", status_code=502, body={})
        router = GatewayRouter(db_session)

        for _ in range(5):
            await router.process(TENANT_ID, "square", "charge", 1999, "USD", {"source": "cnon:ok"})
        calls_before = len(provider_http.calls)

        result = await router.process(TENANT_ID, "square", "charge", 1999, "USD", {"source": "cnon:ok"})

        assert result.success is False
        assert "circuit breaker open" in result.error
        assert len(provider_http.calls) == calls_before

    @pytest.mark.integration
    async def test_ledger_failure_propagates(self, db_session: AsyncSession, payment_settings_factory):
        await payment_settings_factory(PaymentProvider.STRIPE)

        async def broken(self, entry):
            raise OperationalError("INSERT", {}, Exception("disk full"))

        with patch("stripe.PaymentIntent.create", return_value=_stripe_intent()), \
             patch.object(LedgerService, "record", broken):
            with pytest.raises(LedgerConsistencyError):
                await GatewayRouter(db_session).process(
                    TENANT_ID, "stripe", "charge", 1999, "USD", {"source": "pm_card_visa"}
                )


class TestConnectionsAndTokens:

    @pytest.mark.integration
    async def test_test_all_connections(self, db_session: AsyncSession, payment_settings_factory, provider_http):
        await payment_settings_factory(PaymentProvider.STRIPE)
        await payment_settings_factory(PaymentProvider.SQUARE)
        provider_http.add("GET", "/v2/locations", status_code=401, body={
            "errors": [{"category": "AUTHENTICATION_ERROR", "code": "UNAUTHORIZED", "detail": "bad token"}],
        })

        balance = stripe.Balance.construct_from({"object": "balance", "livemode": False}, "sk_test_123")

        with patch("stripe.Balance.retrieve", return_value=balance):
            results = await GatewayRouter(db_session).test_all_connections(TENANT_ID)

        assert results["stripe"]["success"] is True
        assert results["square"] == {"success": False, "message": "square: bad token"}
        assert results["paypal"] == {"success": False, "message": "Not enabled"}

    @pytest.mark.integration
    async def test_client_token_default_gateway(self, db_session: AsyncSession, payment_settings_factory):
        await payment_settings_factory(PaymentProvider.SQUARE)

        token = await GatewayRouter(db_session).client_token(TENANT_ID)

        assert token == {"provider": "square", "application_id": "sq-app", "location_id": "LOC1"}

    @pytest.mark.integration
    async def test_client_token_without_gateway(self, db_session: AsyncSession):
        with pytest.raises(PaymentException):
            await GatewayRouter(db_session).client_token(TENANT_ID)

    @pytest.mark.integration
    async def test_client_token_unknown_provider(self, db_session: AsyncSession):
        with pytest.raises(UnknownProviderError):
            await GatewayRouter(db_session).client_token(TENANT_ID, "venmo")


class TestPaymentResult:

    @pytest.mark.unit
    def test_failure_to_dict(self):
        data = PaymentResult.failure("stripe", "card declined").to_dict()

        assert data["success"] is False
        assert data["status"] == "failed"
        assert data["error"] == "card declined"

    @pytest.mark.unit
    def test_success_omits_error(self):
        data = PaymentResult(success=True, provider="stripe", status="succeeded").to_dict()

        assert "error" not in data
