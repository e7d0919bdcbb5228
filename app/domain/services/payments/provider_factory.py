"""
Provider Factory - builds the adapter for a gateway name.

Adapters hold a DB session and a tenant id, so a fresh instance is created
for every call; nothing here is cached.
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import UnknownProviderError
from app.db.models.transaction import PaymentProvider
from app.domain.services.payments.base_adapter import BasePaymentAdapter


def parse_provider(provider: str | PaymentProvider) -> PaymentProvider:
    """Gateway name to enum; raises UnknownProviderError for anything else"""
    if isinstance(provider, PaymentProvider):
        return provider
    try:
        return PaymentProvider((provider or "").strip().lower())
    except ValueError as e:
        raise UnknownProviderError(str(provider)) from e


def create_adapter(
    provider: str | PaymentProvider,
    db: AsyncSession,
    tenant_id: str,
) -> BasePaymentAdapter:
    """Adapter instance for one gateway and tenant."""
    provider = parse_provider(provider)

    if provider == PaymentProvider.STRIPE:
        from app.domain.services.payments.stripe_adapter import StripeAdapter

        return StripeAdapter(db, tenant_id)

    if provider == PaymentProvider.PAYPAL:
        from app.domain.services.payments.paypal_adapter import PayPalAdapter

        return PayPalAdapter(db, tenant_id)

    if provider == PaymentProvider.SQUARE:
        from app.domain.services.payments.square_adapter import SquareAdapter

        return SquareAdapter(db, tenant_id)

    if provider == PaymentProvider.BRAINTREE:
        from app.domain.services.payments.braintree_adapter import BraintreeAdapter

        return BraintreeAdapter(db, tenant_id)

    if provider == PaymentProvider.AUTHORIZE:
        from app.domain.services.payments.authorize_adapter import AuthorizeNetAdapter

        return AuthorizeNetAdapter(db, tenant_id)

    raise UnknownProviderError(provider.value)
