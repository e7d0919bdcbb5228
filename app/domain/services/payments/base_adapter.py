"""
Payment adapter interface - one implementation per gateway.

Business code depends only on this contract. Each adapter is responsible for:
- loading the tenant's credentials on every call (no cached clients)
- talking to its gateway (SDK or REST) through the provider circuit breaker
- converting native amounts to integer minor units exactly once
- writing the ledger row for money it moved before returning
- authenticating and normalizing the gateway's webhooks
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.circuit_breaker import get_provider_circuit_breaker
from app.core.exceptions import ProviderNotConfiguredError, UnsupportedOperationError
from app.core.logging import get_logger
from app.db.models.payment_settings import PaymentSettings
from app.db.models.transaction import PaymentProvider, TransactionStatus, TransactionType
from app.domain.services.ledger_service import LedgerEntry, LedgerService, LedgerWriteResult

logger = get_logger(__name__)

VOID_SUFFIX = ":void"


def void_external_id(authorization_id: str) -> str:
    """Ledger key of a void; gateways reuse the authorization id for it"""
    return f"{authorization_id}{VOID_SUFFIX}"


class PaymentStatus(str, Enum):
    """Normalized outcome of an adapter call"""
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    AUTHORIZED = "authorized"
    FAILED = "failed"
    REFUNDED = "refunded"
    VOIDED = "voided"


class WebhookEventKind(str, Enum):
    """Internal vocabulary every provider webhook is mapped onto"""
    PAYMENT_SUCCEEDED = "payment-succeeded"
    PAYMENT_FAILED = "payment-failed"
    REFUND_COMPLETED = "refund-completed"
    VOID_COMPLETED = "void-completed"
    UNRECOGNIZED = "unrecognized"


@dataclass
class ProviderConfig:
    tenant_id: str
    credentials: dict[str, Any]
    test_mode: bool


@dataclass
class AdapterResult:
    """Provider response mapped to our vocabulary, amount in minor units"""
    transaction_id: str
    status: PaymentStatus
    amount: int | None
    currency: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionStatus:
    success: bool
    message: str
    test_mode: bool | None = None


@dataclass
class InboundWebhook:
    """Raw inbound request, as the provider sent it"""
    body: bytes
    headers: Mapping[str, str]
    url: str


@dataclass
class NormalizedWebhookEvent:
    kind: WebhookEventKind
    provider_event_type: str
    external_id: str | None = None
    amount: int | None = None
    currency: str | None = None
    customer_email: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup that also works on plain dicts"""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


class BasePaymentAdapter(ABC):
    """
    Unified operation set for one payment gateway.

    Instances are short-lived: create one per request via create_adapter().
    Amounts given to and returned from every method are integer minor units.
    """

    provider: PaymentProvider
    # Credential keys needed for payment operations
    required_credentials: tuple[str, ...] = ()
    # Credential keys needed to authenticate inbound webhooks
    webhook_credentials: tuple[str, ...] = ()

    def __init__(self, db: AsyncSession, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id
        self._breaker = get_provider_circuit_breaker(self.provider.value)

    @property
    def provider_name(self) -> str:
        return self.provider.value

    # ── configuration ──

    async def load_config(self, required: tuple[str, ...] | None = None) -> ProviderConfig:
        """
        Read the tenant's settings for this gateway.

        Raises:
            ProviderNotConfiguredError: no settings row, disabled, or credentials missing.
        """
        result = await self.db.execute(
            select(PaymentSettings).where(
                PaymentSettings.tenant_id == self.tenant_id,
                PaymentSettings.provider == self.provider,
            )
        )
        row = result.scalar_one_or_none()
        if row is None or not row.enabled:
            raise ProviderNotConfiguredError(self.provider_name, self.tenant_id)

        credentials = dict(row.credentials or {})
        keys = self.required_credentials if required is None else required
        missing = [key for key in keys if not credentials.get(key)]
        if missing:
            raise ProviderNotConfiguredError(self.provider_name, self.tenant_id, missing=missing)

        return ProviderConfig(
            tenant_id=self.tenant_id,
            credentials=credentials,
            test_mode=bool(row.test_mode),
        )

    # ── helpers for implementations ──

    async def _call(self, func: Callable, *args, **kwargs):
        """Run a provider call through this provider's circuit breaker"""
        return await self._breaker.execute(func, *args, **kwargs)

    async def _record(
        self,
        *,
        external_id: str,
        amount: int,
        currency: str,
        status: TransactionStatus,
        transaction_type: TransactionType,
        customer_email: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerWriteResult:
        """Persist money this adapter just moved; raises LedgerConsistencyError on failure"""
        return await LedgerService(self.db).record_confirmed(
            LedgerEntry(
                tenant_id=self.tenant_id,
                provider=self.provider,
                external_id=external_id,
                amount=amount,
                currency=currency,
                status=status,
                type=transaction_type,
                customer_email=customer_email,
                metadata=metadata or {},
            )
        )

    # ── payment operations ──

    @abstractmethod
    async def charge(self, amount: int, currency: str, options: dict[str, Any]) -> AdapterResult:
        """Authorize and capture in one step."""

    @abstractmethod
    async def authorize_only(
        self, amount: int, currency: str, options: dict[str, Any]
    ) -> AdapterResult:
        """Place a hold without capturing. Never writes to the ledger."""

    @abstractmethod
    async def capture(
        self,
        transaction_id: str,
        amount: int | None,
        currency: str,
        options: dict[str, Any],
    ) -> AdapterResult:
        """Capture a prior authorization, fully when amount is None."""

    @abstractmethod
    async def refund(
        self,
        transaction_id: str,
        amount: int | None,
        currency: str,
        options: dict[str, Any],
    ) -> AdapterResult:
        """Refund a captured payment, fully when amount is None."""

    @abstractmethod
    async def void(self, transaction_id: str, options: dict[str, Any]) -> AdapterResult:
        """Release an uncaptured authorization."""

    @abstractmethod
    async def get_status(self, transaction_id: str) -> AdapterResult:
        """Current provider-side state. Read-only."""

    @abstractmethod
    async def test_connection(self) -> ConnectionStatus:
        """Read-only credential check; never moves money."""

    async def client_token(self) -> dict[str, Any]:
        """Values a browser checkout needs to tokenize a payment method"""
        raise UnsupportedOperationError(self.provider_name, "client_token")

    # ── inbound webhooks ──

    @abstractmethod
    async def verify_webhook(self, request: InboundWebhook, config: ProviderConfig) -> Any:
        """
        Authenticate an inbound webhook and return its decoded payload.

        Raises:
            WebhookAuthenticationError: signature or transmission check failed.
        """

    @abstractmethod
    def parse_webhook_event(self, payload: Any, config: ProviderConfig) -> NormalizedWebhookEvent:
        """Map an authenticated payload to the internal event vocabulary."""
