"""
Payment API Routes - gateway operations, ledger and diagnostics per tenant

All endpoints require admin authentication (X-Admin-API-Key).
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.logging import get_logger, mask_secret, set_tenant_id
from app.db.database import get_db
from app.db.models.payment_settings import PaymentSettings
from app.db.models.transaction import PaymentProvider, TransactionStatus, TransactionType
from app.domain.services.ledger_service import LedgerService
from app.domain.services.payment_webhook_service import webhook_url
from app.domain.services.payments.gateway_router import PROVIDER_PRECEDENCE, GatewayRouter

logger = get_logger(__name__)

router = APIRouter()


class ProcessPaymentRequest(BaseModel):
    """Payment operation request; amounts in minor units"""
    operation: Literal["charge", "authorize", "capture", "refund", "void", "status"]
    provider: Optional[PaymentProvider] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("currency must be a three-letter ISO code")
        return v


class PaymentResultResponse(BaseModel):
    success: bool
    provider: Optional[str] = None
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TransactionResponse(BaseModel):
    id: int
    tenant_id: str
    provider: PaymentProvider
    external_id: str
    amount: int
    currency: str
    status: TransactionStatus
    type: TransactionType
    customer_email: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="extra")
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]
    total: int
    limit: int
    offset: int


class GatewaysResponse(BaseModel):
    gateways: Dict[str, bool]
    default: Optional[str] = None


class ProviderStatus(BaseModel):
    enabled: bool
    test_mode: Optional[bool] = None
    webhook_url: str
    # configured credential keys, values masked
    credentials: Dict[str, str] = Field(default_factory=dict)


@router.post(
    "/{tenant_id}/process",
    response_model=PaymentResultResponse,
    summary="Run a payment operation",
    description="charge, authorize, capture, refund, void or status through the tenant's gateway.",
    responses={
        200: {"description": "Operation result; `success` is false on decline or error"},
        500: {"description": "Money moved but could not be recorded"},
    },
)
async def process_payment(
    tenant_id: str,
    request: ProcessPaymentRequest,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> PaymentResultResponse:
    set_tenant_id(tenant_id)
    result = await GatewayRouter(db).process(
        tenant_id,
        request.provider,
        request.operation,
        amount=request.amount,
        currency=request.currency,
        options=request.options,
    )
    return PaymentResultResponse(**result.to_dict())


@router.get(
    "/{tenant_id}/transactions",
    response_model=TransactionListResponse,
    summary="Ledger entries, newest first",
)
async def list_transactions(
    tenant_id: str,
    provider: Optional[PaymentProvider] = None,
    status: Optional[TransactionStatus] = None,
    type: Optional[TransactionType] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> TransactionListResponse:
    transactions, total = await LedgerService(db).list_transactions(
        tenant_id,
        provider=provider,
        status=status,
        transaction_type=type,
        limit=limit,
        offset=offset,
    )
    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{tenant_id}/stats", summary="Revenue and outcome counters")
async def transaction_stats(
    tenant_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await LedgerService(db).get_stats(tenant_id)


@router.get(
    "/{tenant_id}/gateways",
    response_model=GatewaysResponse,
    summary="Enabled gateways and the default one",
)
async def enabled_gateways(
    tenant_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> GatewaysResponse:
    gateway_router = GatewayRouter(db)
    default = await gateway_router.default_gateway(tenant_id)
    return GatewaysResponse(
        gateways=await gateway_router.enabled_gateways(tenant_id),
        default=default.value if default else None,
    )


@router.post("/{tenant_id}/test-connections", summary="Credential check for every enabled gateway")
async def test_connections(
    tenant_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    results = await GatewayRouter(db).test_all_connections(tenant_id)
    logger.info(
        "Gateway connections tested",
        extra_data={
            "tenant_id": tenant_id,
            "results": {provider: r["success"] for provider, r in results.items()},
        },
    )
    return results


@router.get("/{tenant_id}/client-token", summary="Client-side checkout token or public key")
async def client_token(
    tenant_id: str,
    provider: Optional[PaymentProvider] = None,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await GatewayRouter(db).client_token(tenant_id, provider)


@router.get(
    "/{tenant_id}/status",
    response_model=Dict[str, ProviderStatus],
    summary="Per-gateway settings and webhook URLs",
)
async def payment_status(
    tenant_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, ProviderStatus]:
    result = await db.execute(
        select(PaymentSettings).where(PaymentSettings.tenant_id == tenant_id)
    )
    rows = {row.provider: row for row in result.scalars().all()}
    status: Dict[str, ProviderStatus] = {}
    for provider in PROVIDER_PRECEDENCE:
        row = rows.get(provider)
        status[provider.value] = ProviderStatus(
            enabled=bool(row and row.enabled),
            test_mode=row.test_mode if row else None,
            webhook_url=webhook_url(provider.value, tenant_id),
            credentials={
                key: mask_secret(str(value))
                for key, value in ((row.credentials or {}) if row else {}).items()
                if value
            },
        )
    return status
