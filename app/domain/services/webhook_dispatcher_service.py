"""
Webhook Dispatcher Service - outbound, signed event delivery to tenant endpoints.

Each event is serialized once and sent to every active registration that
subscribes to it. Every (event, subscriber) pair gets one WebhookDelivery
row; failed rows are retried by the periodic sweep, which claims a row by
conditionally bumping `attempts` so that overlapping sweeps never send the
same row twice.

Wire format:
    POST <url>
    Content-Type: application/json
    X-Webhook-Event: <event type>
    X-Webhook-Timestamp: <ISO-8601, same value as the body's timestamp>
    X-Webhook-ID: <delivery id>
    X-Webhook-Signature: sha256=<hex HMAC-SHA256(secret, body)>   (when a secret is set)
    X-Webhook-Retry: <attempt number>                             (retries only)

    {"event": ..., "timestamp": ..., "tenant_id": ..., "data": {...}}
"""
from __future__ import annotations

import asyncio
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

import httpx
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidWebhookEventError, ValidationException, WebhookNotFoundError
from app.core.logging import get_logger
from app.core.signatures import sign_payload
from app.db.compat import utcnow
from app.db.models.webhook_delivery import WebhookDelivery
from app.db.models.webhook_registration import WILDCARD_EVENT, WebhookRegistration

logger = get_logger(__name__)

TEST_EVENT = "test.ping"
SECRET_PREFIX = "whsec_"

# Subscribable event types and what they mean
WEBHOOK_EVENTS: dict[str, str] = {
    "session.started": "A training session started",
    "session.completed": "A training session completed",
    "session.abandoned": "A training session was abandoned",
    "user.created": "A user was created",
    "user.updated": "A user was updated",
    "user.deleted": "A user was deleted",
    "user.login": "A user logged in",
    "payment.received": "A payment succeeded",
    "payment.failed": "A payment failed",
    "subscription.created": "A subscription was created",
    "subscription.updated": "A subscription was updated",
    "subscription.cancelled": "A subscription was cancelled",
    "company.created": "A company was created",
    "company.updated": "A company was updated",
    "training.milestone": "A training milestone was reached",
    "certification.earned": "A certification was earned",
}

# Headers we set and sign; custom headers never replace them
_RESERVED_HEADERS = {
    "content-type",
    "x-webhook-event",
    "x-webhook-timestamp",
    "x-webhook-id",
    "x-webhook-signature",
    "x-webhook-retry",
}

_UPDATABLE_FIELDS = ("url", "secret", "events", "custom_headers", "is_active")


def generate_webhook_secret() -> str:
    """whsec_ followed by 48 hex characters"""
    return f"{SECRET_PREFIX}{secrets.token_hex(24)}"


def iso_timestamp(moment: datetime | None = None) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix"""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_payload(event_type: str, tenant_id: str, data: dict[str, Any], timestamp: str) -> str:
    """Canonical body; serialized once and shared by all subscribers"""
    return json.dumps(
        {"event": event_type, "timestamp": timestamp, "tenant_id": tenant_id, "data": data},
        separators=(",", ":"),
        default=str,
    )


@dataclass
class DeliveryResult:
    webhook_id: int
    delivery_id: str | None
    success: bool
    status_code: int | None = None
    error: str | None = None
    attempts: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "webhook_id": self.webhook_id,
            "delivery_id": self.delivery_id,
            "success": self.success,
            "status_code": self.status_code,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass
class _AttemptOutcome:
    status_code: int | None = None
    response_excerpt: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300


def _validate_events(events: Iterable[str] | None) -> list[str]:
    events = list(dict.fromkeys(events or []))
    if not events:
        raise ValidationException("At least one event is required", field="events")
    invalid = [e for e in events if e != WILDCARD_EVENT and e not in WEBHOOK_EVENTS]
    if invalid:
        raise InvalidWebhookEventError(invalid)
    return events


async def send_webhook_request(url: str, *, content: bytes, headers: dict[str, str]) -> httpx.Response:
    """POST one delivery with the delivery timeout"""
    async with httpx.AsyncClient(timeout=settings.WEBHOOK_DELIVERY_TIMEOUT_SECONDS) as client:
        return await client.post(url, content=content, headers=headers)


def _validate_url(url: str) -> str:
    url = (url or "").strip()
    if not url.startswith(("https://", "http://")):
        raise ValidationException("Webhook URL must be an http(s) URL", field="url")
    return url


class WebhookDispatcherService:
    """Service for tenant webhook registrations and their deliveries"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Registrations ====================

    async def create_webhook(
        self,
        tenant_id: str,
        url: str,
        events: list[str],
        *,
        secret: str | None = None,
        generate_secret: bool = False,
        custom_headers: dict[str, str] | None = None,
        is_active: bool = True,
    ) -> WebhookRegistration:
        if generate_secret and not secret:
            secret = generate_webhook_secret()
        webhook = WebhookRegistration(
            tenant_id=tenant_id,
            url=_validate_url(url),
            secret=secret or None,
            events=_validate_events(events),
            custom_headers=dict(custom_headers or {}),
            is_active=is_active,
            fail_count=0,
        )
        self.db.add(webhook)
        await self.db.commit()
        await self.db.refresh(webhook)
        logger.info(
            "Webhook registered",
            extra_data={
                "tenant_id": tenant_id,
                "webhook_id": webhook.id,
                "events": webhook.events,
                "signed": webhook.secret is not None,
            },
        )
        return webhook

    async def list_webhooks(self, tenant_id: str) -> list[WebhookRegistration]:
        result = await self.db.execute(
            select(WebhookRegistration)
            .where(WebhookRegistration.tenant_id == tenant_id)
            .order_by(WebhookRegistration.created_at.desc(), WebhookRegistration.id.desc())
        )
        return list(result.scalars().all())

    async def get_webhook(self, tenant_id: str, webhook_id: int) -> WebhookRegistration:
        result = await self.db.execute(
            select(WebhookRegistration).where(
                WebhookRegistration.id == webhook_id,
                WebhookRegistration.tenant_id == tenant_id,
            )
        )
        webhook = result.scalar_one_or_none()
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)
        return webhook

    async def update_webhook(
        self,
        tenant_id: str,
        webhook_id: int,
        *,
        regenerate_secret: bool = False,
        **changes: Any,
    ) -> WebhookRegistration:
        """Apply the given fields; unknown field names are rejected"""
        unknown = set(changes) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationException(f"Cannot update fields: {', '.join(sorted(unknown))}")

        webhook = await self.get_webhook(tenant_id, webhook_id)
        if "url" in changes:
            webhook.url = _validate_url(changes["url"])
        if "events" in changes:
            webhook.events = _validate_events(changes["events"])
        if "custom_headers" in changes:
            webhook.custom_headers = dict(changes["custom_headers"] or {})
        if "is_active" in changes:
            webhook.is_active = bool(changes["is_active"])
        if "secret" in changes:
            webhook.secret = changes["secret"] or None
        if regenerate_secret:
            webhook.secret = generate_webhook_secret()

        await self.db.commit()
        await self.db.refresh(webhook)
        logger.info(
            "Webhook updated",
            extra_data={
                "tenant_id": tenant_id,
                "webhook_id": webhook_id,
                "fields": sorted(changes) + (["secret"] if regenerate_secret else []),
            },
        )
        return webhook

    async def delete_webhook(self, tenant_id: str, webhook_id: int) -> None:
        webhook = await self.get_webhook(tenant_id, webhook_id)
        await self.db.execute(
            delete(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook.id)
        )
        await self.db.delete(webhook)
        await self.db.commit()
        logger.info(
            "Webhook deleted",
            extra_data={"tenant_id": tenant_id, "webhook_id": webhook_id},
        )

    # ==================== Delivery ====================

    async def dispatch(
        self, tenant_id: str, event_type: str, data: dict[str, Any]
    ) -> list[DeliveryResult]:
        """
        Deliver one event to every subscribed, active registration of the tenant.

        Never raises for a failing subscriber; each one yields its own result.
        """
        if event_type not in WEBHOOK_EVENTS:
            raise InvalidWebhookEventError([event_type])

        result = await self.db.execute(
            select(WebhookRegistration).where(
                WebhookRegistration.tenant_id == tenant_id,
                WebhookRegistration.is_active.is_(True),
            )
        )
        webhooks = [w for w in result.scalars().all() if w.subscribes_to(event_type)]
        if not webhooks:
            return []

        timestamp = iso_timestamp()
        payload = build_payload(event_type, tenant_id, data, timestamp)

        # first attempt is owned at creation, so the sweep cannot pick a row mid-flight
        deliveries = [
            WebhookDelivery(
                id=str(uuid.uuid4()),
                webhook_id=webhook.id,
                event_type=event_type,
                payload=payload,
                attempts=1,
            )
            for webhook in webhooks
        ]
        self.db.add_all(deliveries)
        await self.db.commit()

        outcomes = await asyncio.gather(
            *(
                self._post(webhook, delivery.id, event_type, payload, timestamp)
                for webhook, delivery in zip(webhooks, deliveries)
            ),
            return_exceptions=True,
        )

        results = []
        for webhook, delivery, outcome in zip(webhooks, deliveries, outcomes):
            if isinstance(outcome, BaseException):
                outcome = _AttemptOutcome(error=str(outcome) or type(outcome).__name__)
            self._apply_outcome(webhook, delivery, outcome)
            results.append(
                DeliveryResult(
                    webhook_id=webhook.id,
                    delivery_id=delivery.id,
                    success=outcome.success,
                    status_code=outcome.status_code,
                    error=outcome.error,
                    attempts=delivery.attempts,
                )
            )
        await self.db.commit()

        logger.info(
            "Webhook event dispatched",
            extra_data={
                "tenant_id": tenant_id,
                "event_type": event_type,
                "webhook_count": len(webhooks),
                "success_count": sum(1 for r in results if r.success),
            },
        )
        return results

    async def test(self, tenant_id: str, webhook_id: int) -> DeliveryResult:
        """Send one synthetic test.ping; never retried"""
        webhook = await self.get_webhook(tenant_id, webhook_id)
        timestamp = iso_timestamp()
        payload = build_payload(
            TEST_EVENT,
            tenant_id,
            {"message": "This is a test webhook", "webhook_id": webhook.id},
            timestamp,
        )
        delivery = WebhookDelivery(
            id=str(uuid.uuid4()),
            webhook_id=webhook.id,
            event_type=TEST_EVENT,
            payload=payload,
            attempts=1,
        )
        self.db.add(delivery)
        await self.db.commit()

        try:
            outcome = await self._post(webhook, delivery.id, TEST_EVENT, payload, timestamp)
        except Exception as e:
            outcome = _AttemptOutcome(error=str(e) or type(e).__name__)
        self._apply_outcome(webhook, delivery, outcome)
        await self.db.commit()

        logger.info(
            "Webhook test sent",
            extra_data={
                "tenant_id": tenant_id,
                "webhook_id": webhook.id,
                "success": outcome.success,
                "status_code": outcome.status_code,
            },
        )
        return DeliveryResult(
            webhook_id=webhook.id,
            delivery_id=delivery.id,
            success=outcome.success,
            status_code=outcome.status_code,
            error=outcome.error,
        )

    async def retry_failed(self, limit: int | None = None) -> dict[str, int]:
        """
        One sweep over undelivered rows.

        Eligible: not delivered, attempts below WEBHOOK_MAX_RETRIES, created
        inside the retry window, registration active, not a test ping.
        """
        limit = limit or settings.WEBHOOK_RETRY_BATCH_SIZE
        cutoff = utcnow() - timedelta(hours=settings.WEBHOOK_RETRY_WINDOW_HOURS)

        result = await self.db.execute(
            select(WebhookDelivery, WebhookRegistration)
            .join(WebhookRegistration, WebhookRegistration.id == WebhookDelivery.webhook_id)
            .where(
                WebhookDelivery.delivered_at.is_(None),
                WebhookDelivery.attempts < settings.WEBHOOK_MAX_RETRIES,
                WebhookDelivery.created_at >= cutoff,
                WebhookDelivery.event_type != TEST_EVENT,
                WebhookRegistration.is_active.is_(True),
            )
            .order_by(WebhookDelivery.created_at.asc())
            .limit(limit)
        )
        candidates = result.all()

        claimed: list[tuple[WebhookDelivery, WebhookRegistration]] = []
        skipped = 0
        for delivery, webhook in candidates:
            seen = delivery.attempts
            claim = await self.db.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery.id,
                    WebhookDelivery.attempts == seen,
                    WebhookDelivery.delivered_at.is_(None),
                )
                .values(attempts=WebhookDelivery.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount == 0:
                skipped += 1
                continue
            delivery.attempts = seen + 1
            claimed.append((delivery, webhook))
        await self.db.commit()

        if not claimed:
            return {"processed": 0, "succeeded": 0, "failed": 0, "skipped": skipped}

        outcomes = await asyncio.gather(
            *(
                self._post(
                    webhook,
                    delivery.id,
                    delivery.event_type,
                    delivery.payload,
                    _payload_timestamp(delivery.payload),
                    retry_attempt=delivery.attempts,
                )
                for delivery, webhook in claimed
            ),
            return_exceptions=True,
        )

        succeeded = 0
        for (delivery, webhook), outcome in zip(claimed, outcomes):
            if isinstance(outcome, BaseException):
                outcome = _AttemptOutcome(error=str(outcome) or type(outcome).__name__)
            self._apply_outcome(webhook, delivery, outcome)
            if outcome.success:
                succeeded += 1
        await self.db.commit()

        summary = {
            "processed": len(claimed),
            "succeeded": succeeded,
            "failed": len(claimed) - succeeded,
            "skipped": skipped,
        }
        logger.info("Webhook retry sweep finished", extra_data=summary)
        return summary

    async def get_deliveries(
        self,
        tenant_id: str,
        *,
        webhook_id: int | None = None,
        event_type: str | None = None,
        success: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDelivery], int]:
        """Delivery history for the tenant, newest first, plus total count"""
        conditions = [WebhookRegistration.tenant_id == tenant_id]
        if webhook_id is not None:
            conditions.append(WebhookDelivery.webhook_id == webhook_id)
        if event_type:
            conditions.append(WebhookDelivery.event_type == event_type)
        if success is True:
            conditions.append(WebhookDelivery.delivered_at.is_not(None))
        elif success is False:
            conditions.append(WebhookDelivery.delivered_at.is_(None))

        base = (
            select(WebhookDelivery)
            .join(WebhookRegistration, WebhookRegistration.id == WebhookDelivery.webhook_id)
            .where(*conditions)
        )
        total = await self.db.scalar(select(func.count()).select_from(base.subquery()))
        rows = await self.db.execute(
            base.order_by(WebhookDelivery.created_at.desc()).limit(limit).offset(offset)
        )
        return list(rows.scalars().all()), total or 0

    # ==================== Convenience dispatchers ====================

    async def dispatch_session_completed(
        self, tenant_id: str, session: dict[str, Any]
    ) -> list[DeliveryResult]:
        return await self.dispatch(tenant_id, "session.completed", session)

    async def dispatch_user_created(
        self, tenant_id: str, user: dict[str, Any]
    ) -> list[DeliveryResult]:
        return await self.dispatch(tenant_id, "user.created", user)

    async def dispatch_payment_received(
        self, tenant_id: str, payment: dict[str, Any]
    ) -> list[DeliveryResult]:
        return await self.dispatch(tenant_id, "payment.received", payment)

    # ==================== Internals ====================

    async def _post(
        self,
        webhook: WebhookRegistration,
        delivery_id: str,
        event_type: str,
        payload: str,
        timestamp: str,
        *,
        retry_attempt: int | None = None,
    ) -> _AttemptOutcome:
        body = payload.encode("utf-8")
        headers = {
            name: str(value)
            for name, value in (webhook.custom_headers or {}).items()
            if name.lower() not in _RESERVED_HEADERS
        }
        headers.update({
            "Content-Type": "application/json",
            "X-Webhook-Event": event_type,
            "X-Webhook-Timestamp": timestamp,
            "X-Webhook-ID": delivery_id,
        })
        if webhook.secret:
            headers["X-Webhook-Signature"] = sign_payload(webhook.secret, body)
        if retry_attempt is not None:
            headers["X-Webhook-Retry"] = str(retry_attempt)

        timeout = settings.WEBHOOK_DELIVERY_TIMEOUT_SECONDS
        try:
            response = await send_webhook_request(webhook.url, content=body, headers=headers)
        except httpx.TimeoutException:
            return _AttemptOutcome(error=f"Timeout after {timeout}s")
        except httpx.HTTPError as e:
            return _AttemptOutcome(error=str(e) or type(e).__name__)

        outcome = _AttemptOutcome(
            status_code=response.status_code,
            response_excerpt=response.text[: settings.WEBHOOK_RESPONSE_EXCERPT_CHARS],
        )
        if not outcome.success:
            outcome.error = f"HTTP {response.status_code}"
        return outcome

    def _apply_outcome(
        self,
        webhook: WebhookRegistration,
        delivery: WebhookDelivery,
        outcome: _AttemptOutcome,
    ) -> None:
        now = utcnow()
        delivery.status_code = outcome.status_code
        delivery.response_excerpt = outcome.response_excerpt
        delivery.error = outcome.error[:1000] if outcome.error else None
        delivery.last_attempt_at = now
        webhook.last_triggered_at = now

        if outcome.success:
            if delivery.delivered_at is None:
                delivery.delivered_at = now
            webhook.fail_count = 0
        else:
            webhook.fail_count = (webhook.fail_count or 0) + 1
            logger.warning(
                "Webhook delivery failed",
                extra_data={
                    "webhook_id": webhook.id,
                    "delivery_id": delivery.id,
                    "event_type": delivery.event_type,
                    "attempts": delivery.attempts,
                    "status_code": outcome.status_code,
                    "error": outcome.error,
                },
            )


def _payload_timestamp(payload: str) -> str:
    try:
        return json.loads(payload).get("timestamp") or iso_timestamp()
    except (json.JSONDecodeError, AttributeError):
        return iso_timestamp()
