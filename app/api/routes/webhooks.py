"""
Webhook Management API Routes - tenant registrations and delivery history

All endpoints require admin authentication (X-Admin-API-Key).
"""
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.webhook_registration import WILDCARD_EVENT, WebhookRegistration
from app.domain.services.webhook_dispatcher_service import (
    WEBHOOK_EVENTS,
    WebhookDispatcherService,
)

logger = get_logger(__name__)

router = APIRouter()


class WebhookCreate(BaseModel):
    url: str = Field(..., max_length=2048)
    events: List[str] = Field(..., min_length=1)
    secret: Optional[str] = Field(None, max_length=255)
    generate_secret: bool = False
    custom_headers: Dict[str, str] = Field(default_factory=dict)
    is_active: bool = True


class WebhookUpdate(BaseModel):
    url: Optional[str] = Field(None, max_length=2048)
    events: Optional[List[str]] = None
    secret: Optional[str] = Field(None, max_length=255)
    custom_headers: Optional[Dict[str, str]] = None
    is_active: Optional[bool] = None
    regenerate_secret: bool = False


class WebhookResponse(BaseModel):
    id: int
    tenant_id: str
    url: str
    events: List[str]
    custom_headers: Dict[str, str]
    is_active: bool
    fail_count: int
    has_secret: bool
    last_triggered_at: Optional[datetime] = None
    created_at: datetime


class WebhookWithSecretResponse(WebhookResponse):
    """Returned on create/update so a generated secret can be copied once"""
    secret: Optional[str] = None


class DeliveryResponse(BaseModel):
    id: str
    webhook_id: int
    event_type: str
    payload: str
    status_code: Optional[int] = None
    response_excerpt: Optional[str] = None
    error: Optional[str] = None
    attempts: int
    success: bool
    delivered_at: Optional[datetime] = None
    created_at: datetime
    last_attempt_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DeliveryListResponse(BaseModel):
    deliveries: List[DeliveryResponse]
    total: int
    limit: int
    offset: int


class DeliveryResultResponse(BaseModel):
    webhook_id: int
    delivery_id: Optional[str] = None
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: int


def _to_response(webhook: WebhookRegistration, *, with_secret: bool = False) -> WebhookResponse:
    data = {
        "id": webhook.id,
        "tenant_id": webhook.tenant_id,
        "url": webhook.url,
        "events": webhook.events or [],
        "custom_headers": webhook.custom_headers or {},
        "is_active": webhook.is_active,
        "fail_count": webhook.fail_count or 0,
        "has_secret": bool(webhook.secret),
        "last_triggered_at": webhook.last_triggered_at,
        "created_at": webhook.created_at,
    }
    if with_secret:
        return WebhookWithSecretResponse(**data, secret=webhook.secret)
    return WebhookResponse(**data)


@router.get("/{tenant_id}/webhooks/events", summary="Subscribable event types")
async def list_events(
    tenant_id: str,
    _: None = Depends(require_admin_api_key),
) -> dict:
    return {
        "events": [{"type": name, "description": text} for name, text in WEBHOOK_EVENTS.items()],
        "wildcard": WILDCARD_EVENT,
    }


@router.get(
    "/{tenant_id}/webhooks/deliveries",
    response_model=DeliveryListResponse,
    summary="Delivery history, newest first",
)
async def list_deliveries(
    tenant_id: str,
    webhook_id: Optional[int] = None,
    event_type: Optional[str] = None,
    success: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> DeliveryListResponse:
    deliveries, total = await WebhookDispatcherService(db).get_deliveries(
        tenant_id,
        webhook_id=webhook_id,
        event_type=event_type,
        success=success,
        limit=limit,
        offset=offset,
    )
    return DeliveryListResponse(
        deliveries=[DeliveryResponse.model_validate(d) for d in deliveries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{tenant_id}/webhooks", response_model=List[WebhookResponse])
async def list_webhooks(
    tenant_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> List[WebhookResponse]:
    webhooks = await WebhookDispatcherService(db).list_webhooks(tenant_id)
    return [_to_response(w) for w in webhooks]


@router.post(
    "/{tenant_id}/webhooks",
    response_model=WebhookWithSecretResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"description": "Invalid URL or unknown event type"}},
)
async def create_webhook(
    tenant_id: str,
    request: WebhookCreate,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> WebhookResponse:
    webhook = await WebhookDispatcherService(db).create_webhook(
        tenant_id,
        request.url,
        request.events,
        secret=request.secret,
        generate_secret=request.generate_secret,
        custom_headers=request.custom_headers,
        is_active=request.is_active,
    )
    return _to_response(webhook, with_secret=True)


@router.get(
    "/{tenant_id}/webhooks/{webhook_id}",
    response_model=WebhookResponse,
    responses={404: {"description": "Webhook not found"}},
)
async def get_webhook(
    tenant_id: str,
    webhook_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> WebhookResponse:
    webhook = await WebhookDispatcherService(db).get_webhook(tenant_id, webhook_id)
    return _to_response(webhook)


@router.patch(
    "/{tenant_id}/webhooks/{webhook_id}",
    response_model=WebhookWithSecretResponse,
    responses={404: {"description": "Webhook not found"}},
)
async def update_webhook(
    tenant_id: str,
    webhook_id: int,
    request: WebhookUpdate,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> WebhookResponse:
    changes = request.model_dump(exclude_unset=True)
    regenerate = changes.pop("regenerate_secret", False)
    webhook = await WebhookDispatcherService(db).update_webhook(
        tenant_id, webhook_id, regenerate_secret=regenerate, **changes
    )
    return _to_response(webhook, with_secret=regenerate)


@router.delete(
    "/{tenant_id}/webhooks/{webhook_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"description": "Webhook not found"}},
)
async def delete_webhook(
    tenant_id: str,
    webhook_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> None:
    await WebhookDispatcherService(db).delete_webhook(tenant_id, webhook_id)


@router.post(
    "/{tenant_id}/webhooks/{webhook_id}/test",
    response_model=DeliveryResultResponse,
    summary="Send one test.ping to the endpoint",
    responses={404: {"description": "Webhook not found"}},
)
async def test_webhook(
    tenant_id: str,
    webhook_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> DeliveryResultResponse:
    result = await WebhookDispatcherService(db).test(tenant_id, webhook_id)
    return DeliveryResultResponse(**result.to_dict())
