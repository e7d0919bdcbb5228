"""
Fixtures and helpers for end-to-end scenario tests.

Provides:
- Stripe SDK objects and signed Stripe webhook builders
- A recorder standing in for tenant webhook endpoints
- A recorder standing in for the Celery dispatch task
- DB assertions for ledger rows and delivery rows
"""
import hashlib
import hmac
import json
import time
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import stripe
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.transaction import PaymentProvider, Transaction, TransactionStatus
from app.db.models.webhook_delivery import WebhookDelivery
from tests.conftest import DEFAULT_CREDENTIALS, DELIVERY_TRANSPORT

STRIPE_WEBHOOK_SECRET = DEFAULT_CREDENTIALS[PaymentProvider.STRIPE]["webhook_secret"]


# ============================================================================
# Stripe payload builders
# ============================================================================

_event_counter = 0


def _next_event_id() -> str:
    global _event_counter
    _event_counter += 1
    return f"evt_{_event_counter}"


def build_stripe_intent(intent_id: str, status: str = "succeeded", amount: int = 1999) -> dict:
    return {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount if status == "succeeded" else 0,
        "currency": "usd",
        "status": status,
        "client_secret": f"{intent_id}_secret",
        "receipt_email": "payer@example.com",
        "metadata": {},
    }


def stripe_sdk_intent(intent_id: str, status: str = "succeeded", amount: int = 1999) -> stripe.PaymentIntent:
    """The intent as the SDK returns it"""
    return stripe.PaymentIntent.construct_from(build_stripe_intent(intent_id, status, amount), "sk_test_123")


def stripe_sdk_refund(refund_id: str, amount: int, status: str = "succeeded") -> stripe.Refund:
    return stripe.Refund.construct_from(
        {"id": refund_id, "object": "refund", "amount": amount, "currency": "usd", "status": status},
        "sk_test_123",
    )


def build_stripe_event(event_type: str, obj: dict) -> bytes:
    return json.dumps({
        "id": _next_event_id(),
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode()


def stripe_headers(body: bytes, secret: str = STRIPE_WEBHOOK_SECRET) -> dict[str, str]:
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{body.decode()}".encode(), hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={timestamp},v1={digest}", "Content-Type": "application/json"}


# ============================================================================
# Fixtures
# ============================================================================


class EndpointRecorder:
    """Records outbound POSTs and answers them with a fixed status"""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: list[dict[str, Any]] = []

    async def post(self, url: str, *, content: bytes, headers: dict[str, str]) -> httpx.Response:
        self.requests.append({"url": url, "content": content, "headers": headers})
        return httpx.Response(self.status_code, text="ok")


@pytest.fixture
def tenant_endpoint():
    """Patches outbound webhook POSTs; yields the recorder"""
    recorder = EndpointRecorder()
    with patch(DELIVERY_TRANSPORT, AsyncMock(side_effect=recorder.post)):
        yield recorder


@pytest.fixture
def enqueued_events():
    """Replaces dispatch_webhook_event.delay; yields the (tenant_id, event_type, data) calls"""
    events: list[tuple] = []
    with patch(
        "app.workers.tasks.dispatch_webhook_event.delay",
        side_effect=lambda *args: events.append(args),
    ):
        yield events


# ============================================================================
# DB assertions
# ============================================================================


async def ledger_rows(db: AsyncSession, provider: PaymentProvider, external_id: str) -> list[Transaction]:
    result = await db.execute(
        select(Transaction).where(
            Transaction.provider == provider,
            Transaction.external_id == external_id,
        )
    )
    return list(result.scalars().all())


async def assert_single_ledger_row(
    db: AsyncSession,
    provider: PaymentProvider,
    external_id: str,
    status: TransactionStatus,
) -> Transaction:
    rows = await ledger_rows(db, provider, external_id)
    assert len(rows) == 1, f"expected one row for {external_id}, found {len(rows)}"
    assert rows[0].status == status, f"{external_id}: expected {status}, got {rows[0].status}"
    return rows[0]


async def assert_delivery_count(db: AsyncSession, expected: int) -> None:
    count = await db.scalar(select(func.count(WebhookDelivery.id)))
    assert count == expected, f"expected {expected} deliveries, found {count}"
