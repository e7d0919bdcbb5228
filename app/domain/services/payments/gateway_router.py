"""
Gateway Router - single entry point for moving money.

Resolves which gateway serves a tenant, dispatches the operation to its
adapter and normalizes every outcome into a PaymentResult. Adapter errors
become `success=False`; only LedgerConsistencyError escapes, since it means
money moved without a record.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AppException,
    ErrorCode,
    LedgerConsistencyError,
    PaymentException,
)
from app.core.logging import get_logger
from app.core.money import normalize_currency, validate_amount
from app.db.models.payment_settings import PaymentSettings
from app.db.models.transaction import PaymentProvider
from app.domain.services.payments.base_adapter import AdapterResult, PaymentStatus
from app.domain.services.payments.provider_factory import create_adapter, parse_provider

logger = get_logger(__name__)

# Order used when the caller does not name a gateway
PROVIDER_PRECEDENCE: tuple[PaymentProvider, ...] = (
    PaymentProvider.STRIPE,
    PaymentProvider.PAYPAL,
    PaymentProvider.BRAINTREE,
    PaymentProvider.SQUARE,
    PaymentProvider.AUTHORIZE,
)

OPERATIONS = ("charge", "authorize", "capture", "refund", "void", "status")
_NEEDS_TRANSACTION_ID = {"capture", "refund", "void", "status"}

NO_GATEWAY_ENABLED = "No payment gateway enabled"


@dataclass
class PaymentResult:
    success: bool
    provider: str | None
    transaction_id: str | None = None
    status: str | None = None
    amount: int | None = None
    currency: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, provider: str | None, error: str, **kwargs) -> "PaymentResult":
        return cls(
            success=False,
            provider=provider,
            status=PaymentStatus.FAILED.value,
            error=error,
            **kwargs,
        )

    @classmethod
    def from_adapter(cls, provider: str, result: AdapterResult) -> "PaymentResult":
        return cls(
            success=result.status != PaymentStatus.FAILED,
            provider=provider,
            transaction_id=result.transaction_id,
            status=result.status.value,
            amount=result.amount,
            currency=result.currency,
            metadata=dict(result.metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "success": self.success,
            "provider": self.provider,
            "transaction_id": self.transaction_id,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "metadata": self.metadata,
        }
        if self.error:
            data["error"] = self.error
        return data


class GatewayRouter:
    """Routes payment operations to the tenant's gateways"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _enabled_providers(self, tenant_id: str) -> set[PaymentProvider]:
        result = await self.db.execute(
            select(PaymentSettings.provider).where(
                PaymentSettings.tenant_id == tenant_id,
                PaymentSettings.enabled.is_(True),
            )
        )
        return set(result.scalars().all())

    async def enabled_gateways(self, tenant_id: str) -> dict[str, bool]:
        enabled = await self._enabled_providers(tenant_id)
        return {provider.value: provider in enabled for provider in PROVIDER_PRECEDENCE}

    async def default_gateway(self, tenant_id: str) -> PaymentProvider | None:
        """First enabled gateway by precedence, None when nothing is enabled"""
        enabled = await self._enabled_providers(tenant_id)
        for provider in PROVIDER_PRECEDENCE:
            if provider in enabled:
                return provider
        return None

    async def process(
        self,
        tenant_id: str,
        provider: str | PaymentProvider | None,
        operation: str,
        amount: int | None = None,
        currency: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> PaymentResult:
        """
        Run one payment operation.

        Args:
            tenant_id: tenant whose gateway settings are used
            provider: gateway name, or None for the tenant's default gateway
            operation: charge, authorize, capture, refund, void or status
            amount: minor units; required for charge/authorize, optional for capture/refund
            currency: ISO code, USD when omitted
            options: gateway-specific input; transaction_id for follow-up operations

        Returns:
            PaymentResult; never raises except LedgerConsistencyError.
        """
        options = dict(options or {})
        provider_name = provider.value if isinstance(provider, PaymentProvider) else provider

        try:
            if provider is None:
                resolved = await self.default_gateway(tenant_id)
                if resolved is None:
                    return PaymentResult.failure(None, NO_GATEWAY_ENABLED)
            else:
                resolved = parse_provider(provider)
            provider_name = resolved.value

            if operation not in OPERATIONS:
                return PaymentResult.failure(provider_name, f"Unsupported operation: {operation}")

            transaction_id = options.pop("transaction_id", None)
            if operation in _NEEDS_TRANSACTION_ID and not transaction_id:
                return PaymentResult.failure(
                    provider_name, f"transaction_id is required for {operation}"
                )

            validate_amount(amount, allow_none=operation not in ("charge", "authorize"))
            currency = normalize_currency(currency)

            adapter = create_adapter(resolved, self.db, tenant_id)
            if operation == "charge":
                result = await adapter.charge(amount, currency, options)
            elif operation == "authorize":
                result = await adapter.authorize_only(amount, currency, options)
            elif operation == "capture":
                result = await adapter.capture(transaction_id, amount, currency, options)
            elif operation == "refund":
                result = await adapter.refund(transaction_id, amount, currency, options)
            elif operation == "void":
                result = await adapter.void(transaction_id, options)
            else:
                result = await adapter.get_status(transaction_id)

        except LedgerConsistencyError:
            logger.critical(
                "Payment moved without a ledger record",
                extra_data={
                    "tenant_id": tenant_id,
                    "provider": provider_name,
                    "operation": operation,
                    "amount": amount,
                },
            )
            raise
        except AppException as e:
            logger.warning(
                "Payment operation failed",
                extra_data={
                    "tenant_id": tenant_id,
                    "provider": provider_name,
                    "operation": operation,
                    "error_code": e.error_code.value,
                    "error": e.message,
                },
            )
            return PaymentResult.failure(provider_name, e.message)
        except Exception as e:
            logger.error(
                "Unexpected error in payment operation",
                extra_data={
                    "tenant_id": tenant_id,
                    "provider": provider_name,
                    "operation": operation,
                    "error": str(e),
                },
                exc_info=True,
            )
            return PaymentResult.failure(provider_name, str(e) or type(e).__name__)

        logger.info(
            "Payment operation completed",
            extra_data={
                "tenant_id": tenant_id,
                "provider": provider_name,
                "operation": operation,
                "transaction_id": result.transaction_id,
                "status": result.status.value,
            },
        )
        return PaymentResult.from_adapter(provider_name, result)

    async def test_all_connections(self, tenant_id: str) -> dict[str, dict[str, Any]]:
        """Credential check for every enabled gateway; disabled ones report "Not enabled"."""
        enabled = await self._enabled_providers(tenant_id)
        results: dict[str, dict[str, Any]] = {}
        for provider in PROVIDER_PRECEDENCE:
            if provider not in enabled:
                results[provider.value] = {"success": False, "message": "Not enabled"}
                continue
            adapter = create_adapter(provider, self.db, tenant_id)
            try:
                status = await adapter.test_connection()
                results[provider.value] = {
                    "success": status.success,
                    "message": status.message,
                    "test_mode": status.test_mode,
                }
            except AppException as e:
                results[provider.value] = {"success": False, "message": e.message}
            except Exception as e:
                logger.error(
                    "Connection test crashed",
                    extra_data={"tenant_id": tenant_id, "provider": provider.value, "error": str(e)},
                    exc_info=True,
                )
                results[provider.value] = {"success": False, "message": str(e) or type(e).__name__}
        return results

    async def client_token(
        self, tenant_id: str, provider: str | PaymentProvider | None = None
    ) -> dict[str, Any]:
        """Values a checkout page needs; raises when the gateway is not usable"""
        if provider is None:
            resolved = await self.default_gateway(tenant_id)
            if resolved is None:
                raise PaymentException(NO_GATEWAY_ENABLED, ErrorCode.NO_GATEWAY_ENABLED)
        else:
            resolved = parse_provider(provider)
        adapter = create_adapter(resolved, self.db, tenant_id)
        token = await adapter.client_token()
        return {"provider": resolved.value, **token}
