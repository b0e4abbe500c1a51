"""
Celery Application Configuration
"""
from celery import Celery

from webhook_gateway.core.config import settings

celery_app = Celery(
    "webhook_gateway",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["webhook_gateway.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "retry-failed-events": {
        "task": "webhook_gateway.workers.tasks.retry_failed_events",
        "schedule": settings.RETRY_INTERVAL_SECONDS,
    },
    "archive-old-events-daily": {
        "task": "webhook_gateway.workers.tasks.archive_old_events",
        "schedule": 86400.0,  # 24 hours
    },
    "purge-abandoned-failed-events-daily": {
        "task": "webhook_gateway.workers.tasks.purge_abandoned_failed_events",
        "schedule": 86400.0,  # 24 hours
    },
}
