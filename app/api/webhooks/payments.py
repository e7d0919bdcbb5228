"""
Inbound payment provider webhooks.

One explicit route per provider. The tenant id in the path selects whose
credentials authenticate the request; authentication failures surface as
401 through the application exception handler.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.payment_webhook_service import PaymentWebhookService

logger = get_logger(__name__)

router = APIRouter()

_RESPONSES = {
    200: {"description": "Received; `handled` tells whether the ledger was touched"},
    401: {"description": "Signature or transmission verification failed"},
}


async def _receive(provider: str, tenant_id: str, request: Request, db: AsyncSession) -> dict:
    body = await request.body()
    receipt = await PaymentWebhookService(db).receive(provider, tenant_id, body, request.headers)
    return receipt.to_response()


@router.post("/stripe/{tenant_id}", summary="Stripe webhook", responses=_RESPONSES)
async def stripe_webhook(tenant_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    return await _receive("stripe", tenant_id, request, db)


@router.post("/paypal/{tenant_id}", summary="PayPal webhook", responses=_RESPONSES)
async def paypal_webhook(tenant_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    return await _receive("paypal", tenant_id, request, db)


@router.post("/square/{tenant_id}", summary="Square webhook", responses=_RESPONSES)
async def square_webhook(tenant_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    return await _receive("square", tenant_id, request, db)


@router.post("/braintree/{tenant_id}", summary="Braintree webhook", responses=_RESPONSES)
async def braintree_webhook(tenant_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    return await _receive("braintree", tenant_id, request, db)


@router.post("/authorize/{tenant_id}", summary="Authorize.net webhook", responses=_RESPONSES)
async def authorize_webhook(tenant_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    return await _receive("authorize", tenant_id, request, db)
