"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- API test client with the database override
- Payment settings and webhook registration factories
- Provider HTTP fakes
"""
# Settings are read at import time; configure the test environment first
import os
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PUBLIC_BASE_URL", "https://payments.test")

import json
from contextlib import ExitStack
from typing import Any, AsyncGenerator, Callable
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.database import Base, get_db
from app.db.models.payment_settings import PaymentSettings
from app.db.models.transaction import PaymentProvider
from app.db.models.webhook_registration import WebhookRegistration
from app.main import app

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
ADMIN_HEADERS = {"X-Admin-API-Key": "test-admin-key"}
TENANT_ID = "tenant-1"
# outbound webhook POSTs go through this; patch it instead of httpx.AsyncClient
DELIVERY_TRANSPORT = "app.domain.services.webhook_dispatcher_service.send_webhook_request"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def session_maker(async_engine):
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Test Data Factories
# ============================================================================

# Credentials that satisfy every adapter's required keys
DEFAULT_CREDENTIALS: dict[PaymentProvider, dict[str, str]] = {
    PaymentProvider.STRIPE: {
        "secret_key": "sk_test_123",
        "publishable_key": "pk_test_123",
        "webhook_secret": "whsec_stripe_test",
    },
    PaymentProvider.PAYPAL: {
        "client_id": "paypal-client",
        "client_secret": "paypal-secret",
        "webhook_id": "WH-123",
    },
    PaymentProvider.SQUARE: {
        "access_token": "sq-token",
        "location_id": "LOC1",
        "application_id": "sq-app",
        "webhook_signature_key": "sq-signature-key",
    },
    PaymentProvider.BRAINTREE: {
        "merchant_id": "merchant1",
        "public_key": "bt-public",
        "private_key": "bt-private",
    },
    PaymentProvider.AUTHORIZE: {
        "api_login_id": "anet-login",
        "transaction_key": "anet-key",
        "signature_key": "ABCDEF0123456789",
        "public_client_key": "anet-client-key",
    },
}


@pytest.fixture
def payment_settings_factory(db_session: AsyncSession):
    """Factory for per-tenant gateway settings rows"""
    async def _create(
        provider: PaymentProvider,
        *,
        tenant_id: str = TENANT_ID,
        enabled: bool = True,
        test_mode: bool = True,
        credentials: dict[str, Any] | None = None,
    ) -> PaymentSettings:
        row = PaymentSettings(
            tenant_id=tenant_id,
            provider=provider,
            enabled=enabled,
            test_mode=test_mode,
            credentials=dict(DEFAULT_CREDENTIALS[provider] if credentials is None else credentials),
        )
        db_session.add(row)
        await db_session.commit()
        await db_session.refresh(row)
        return row

    return _create


@pytest.fixture
def webhook_factory(db_session: AsyncSession):
    """Factory for outbound webhook registrations"""
    async def _create(
        *,
        tenant_id: str = TENANT_ID,
        url: str = "https://hooks.example.com/receive",
        events: list[str] | None = None,
        secret: str | None = None,
        custom_headers: dict[str, str] | None = None,
        is_active: bool = True,
    ) -> WebhookRegistration:
        webhook = WebhookRegistration(
            tenant_id=tenant_id,
            url=url,
            events=events or ["payment.received"],
            secret=secret,
            custom_headers=custom_headers or {},
            is_active=is_active,
            fail_count=0,
        )
        db_session.add(webhook)
        await db_session.commit()
        await db_session.refresh(webhook)
        return webhook

    return _create


# ============================================================================
# Provider HTTP fakes
# ============================================================================

def json_response(status_code: int, body: Any, *, method: str = "POST", url: str = "https://provider.test") -> httpx.Response:
    """Real httpx.Response with a JSON body, as a provider would return it"""
    return httpx.Response(
        status_code,
        content=json.dumps(body).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        request=httpx.Request(method, url),
    )


class FakeProviderHTTP:
    """
    Stands in for send_provider_request in the REST and GraphQL adapters.

    Routes are matched on (method, URL substring); the first match wins.
    Handlers receive the recorded call and return an httpx.Response or raise.
    """

    def __init__(self) -> None:
        self.routes: list[tuple[str, str, Callable[[dict], httpx.Response]]] = []
        self.calls: list[dict[str, Any]] = []

    def add(self, method: str, url_part: str, status_code: int = 200, body: Any = None, handler=None):
        if handler is None:
            payload = {} if body is None else body

            def handler(call, _status=status_code, _payload=payload):
                return json_response(_status, _payload, method=call["method"], url=call["url"])
        self.routes.append((method.upper(), url_part, handler))
        return self

    async def send(self, provider: str, method: str, url: str, *, operation: str, **kwargs) -> httpx.Response:
        call = {"provider": provider, "method": method.upper(), "url": url, "operation": operation, **kwargs}
        self.calls.append(call)
        for route_method, url_part, handler in self.routes:
            if route_method == call["method"] and url_part in url:
                return handler(call)
        raise AssertionError(f"Unexpected provider request: {method} {url}")

    def calls_to(self, url_part: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if url_part in c["url"]]


_ADAPTER_MODULES = (
    "app.domain.services.payments.paypal_adapter",
    "app.domain.services.payments.square_adapter",
    "app.domain.services.payments.braintree_adapter",
    "app.domain.services.payments.authorize_adapter",
)


@pytest.fixture
def provider_http():
    """Patch the provider transport; yields a FakeProviderHTTP to register routes on"""
    fake = FakeProviderHTTP()
    with ExitStack() as stack:
        for module in _ADAPTER_MODULES:
            stack.enter_context(patch(f"{module}.send_provider_request", side_effect=fake.send))
        yield fake


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def no_ledger_retry_delay():
    """Ledger write retries without sleeping"""
    from app.core.config import settings
    with patch.object(settings, "LEDGER_WRITE_RETRY_DELAY_SECONDS", 0):
        yield
