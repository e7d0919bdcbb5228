"""
Scenario - authorize, capture, then partially refund through the admin API

Covers:
- Follow-up operations reading transaction_id from options
- Ledger rows for the capture and the refund, none for the authorization
- Revenue figures after the refund
"""
from unittest.mock import patch

import pytest

from app.db.models.transaction import PaymentProvider, TransactionStatus, TransactionType
from tests.conftest import ADMIN_HEADERS, TENANT_ID
from tests.scenarios.conftest import (
    assert_single_ledger_row,
    ledger_rows,
    stripe_sdk_intent,
    stripe_sdk_refund,
)

PROCESS_URL = f"/api/v1/payments/{TENANT_ID}/process"


@pytest.mark.scenario
class TestAuthorizeCaptureRefund:

    async def test_full_flow(self, test_client, db_session, payment_settings_factory):
        await payment_settings_factory(PaymentProvider.STRIPE)

        # --- authorize ---
        with patch("stripe.PaymentIntent.create", return_value=stripe_sdk_intent("pi_auth_1", status="requires_capture", amount=5000)):
            response = await test_client.post(
                PROCESS_URL,
                json={"operation": "authorize", "amount": 5000, "currency": "USD", "options": {"source": "pm_card_visa"}},
                headers=ADMIN_HEADERS,
            )
        authorized = response.json()
        assert authorized["success"] is True
        assert authorized["status"] == "authorized"
        assert await ledger_rows(db_session, PaymentProvider.STRIPE, "pi_auth_1") == []

        # --- capture ---
        with patch("stripe.PaymentIntent.capture", return_value=stripe_sdk_intent("pi_auth_1", amount=5000)):
            response = await test_client.post(
                PROCESS_URL,
                json={"operation": "capture", "amount": 5000, "currency": "USD",
                      "options": {"transaction_id": authorized["transaction_id"]}},
                headers=ADMIN_HEADERS,
            )
        assert response.json()["status"] == "succeeded"
        captured = await assert_single_ledger_row(
            db_session, PaymentProvider.STRIPE, "pi_auth_1", TransactionStatus.SUCCEEDED
        )
        assert captured.type == TransactionType.CAPTURE

        # --- partial refund ---
        with patch("stripe.Refund.create", return_value=stripe_sdk_refund("re_flow_1", 1500)) as mock_refund:
            response = await test_client.post(
                PROCESS_URL,
                json={"operation": "refund", "amount": 1500, "currency": "USD",
                      "options": {"transaction_id": "pi_auth_1"}},
                headers=ADMIN_HEADERS,
            )
        assert response.json()["transaction_id"] == "re_flow_1"
        assert mock_refund.call_args.kwargs["payment_intent"] == "pi_auth_1"
        await assert_single_ledger_row(db_session, PaymentProvider.STRIPE, "re_flow_1", TransactionStatus.REFUNDED)

        # --- figures ---
        stats = (await test_client.get(f"/api/v1/payments/{TENANT_ID}/stats", headers=ADMIN_HEADERS)).json()
        assert stats["total_revenue"] == 5000
        assert stats["refunded_amount"] == 1500
        assert stats["net_revenue"] == 3500

    async def test_follow_up_without_transaction_id(self, test_client, payment_settings_factory):
        await payment_settings_factory(PaymentProvider.STRIPE)

        response = await test_client.post(
            PROCESS_URL,
            json={"operation": "refund", "amount": 100, "currency": "USD"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert "transaction_id" in response.json()["error"]
