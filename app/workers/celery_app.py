"""
Celery application: outbound webhook fan-out, the retry sweep and history cleanup.

Run a worker with ``celery -A app.workers.celery_app worker`` and the
scheduler with ``celery -A app.workers.celery_app beat``.
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "payments_core",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # each endpoint POST is bounded by WEBHOOK_DELIVERY_TIMEOUT_SECONDS
    task_time_limit=300,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,
)

celery_app.conf.beat_schedule = {
    "webhook-retry-sweep": {
        "task": "app.workers.tasks.retry_failed_webhook_deliveries",
        "schedule": float(settings.WEBHOOK_RETRY_SWEEP_SECONDS),
    },
    "webhook-delivery-cleanup": {
        "task": "app.workers.tasks.cleanup_old_webhook_deliveries",
        "schedule": crontab(hour="3", minute="30"),
    },
}
