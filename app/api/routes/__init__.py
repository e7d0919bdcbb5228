"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.payments import router as payments_router
from app.api.routes.webhooks import router as webhooks_router
from app.api.webhooks.payments import router as inbound_webhooks_router

router = APIRouter()

router.include_router(payments_router, prefix="/payments", tags=["Payments"])
router.include_router(webhooks_router, prefix="/tenants", tags=["Webhook Registrations"])
# Provider callbacks; authenticated by signature, not by API key
router.include_router(inbound_webhooks_router, prefix="/webhooks", tags=["Provider Webhooks"])
