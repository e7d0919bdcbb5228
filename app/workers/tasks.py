"""
Celery tasks for outbound webhook delivery.

Request handlers enqueue dispatch_webhook_event instead of calling tenant
endpoints inline. Beat drives the retry sweep and the daily history cleanup.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Coroutine, Iterator, TypeVar

from sqlalchemy import delete

from app.core.logging import get_logger, log_async_operation, set_correlation_id, set_tenant_id
from app.db.compat import utcnow
from app.db.database import get_task_session
from app.db.models.webhook_delivery import WebhookDelivery
from app.domain.services.webhook_dispatcher_service import WebhookDispatcherService
from app.workers.celery_app import celery_app

logger = get_logger(__name__)

T = TypeVar("T")


@contextmanager
def get_event_loop() -> Iterator[asyncio.AbstractEventLoop]:
    """A private event loop for one task; leftover tasks are cancelled on exit"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        leftovers = asyncio.all_tasks(loop)
        for task in leftovers:
            task.cancel()
        try:
            if leftovers:
                loop.run_until_complete(asyncio.gather(*leftovers, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
        finally:
            asyncio.set_event_loop(None)
            loop.close()


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion from a synchronous task body"""
    set_correlation_id()
    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


# ----------------------------------------------------------------------------
# Async bodies
# ----------------------------------------------------------------------------


async def _dispatch(tenant_id: str, event_type: str, data: dict[str, Any]) -> list[dict]:
    set_tenant_id(tenant_id)
    async with get_task_session() as db:
        results = await WebhookDispatcherService(db).dispatch(tenant_id, event_type, data)
    return [result.to_dict() for result in results]


@log_async_operation("webhook retry sweep")
async def _retry_failed_deliveries(limit: int | None = None) -> dict[str, int]:
    async with get_task_session() as db:
        return await WebhookDispatcherService(db).retry_failed(limit=limit)


async def _delete_deliveries_before(days: int) -> int:
    cutoff = utcnow() - timedelta(days=days)
    async with get_task_session() as db:
        result = await db.execute(delete(WebhookDelivery).where(WebhookDelivery.created_at < cutoff))
        await db.commit()
    return result.rowcount


# ----------------------------------------------------------------------------
# Tasks
# ----------------------------------------------------------------------------


@celery_app.task(name="app.workers.tasks.dispatch_webhook_event")
def dispatch_webhook_event(tenant_id: str, event_type: str, data: dict[str, Any]) -> list[dict]:
    """Fan one event out to the tenant's subscribed registrations"""
    return run_async(_dispatch(tenant_id, event_type, data))


@celery_app.task(name="app.workers.tasks.retry_failed_webhook_deliveries")
def retry_failed_webhook_deliveries(limit: int | None = None) -> dict[str, int]:
    return run_async(_retry_failed_deliveries(limit))


@celery_app.task(name="app.workers.tasks.cleanup_old_webhook_deliveries")
def cleanup_old_webhook_deliveries(days: int = 30) -> dict[str, int]:
    """Drop delivery history older than ``days``, delivered or not"""
    deleted = run_async(_delete_deliveries_before(days))
    logger.info(
        "Old webhook deliveries removed",
        extra_data={"deleted": deleted, "older_than_days": days},
    )
    return {"deleted": deleted}
