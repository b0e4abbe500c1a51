"""
Celery Tasks for background maintenance of the event store

Retry ticks for failed writes, retention archival and purging of abandoned
failed events. Each task runs on a fresh event loop with its own engine.
"""
import asyncio
from contextlib import contextmanager
from datetime import timedelta

from webhook_gateway.workers.celery_app import celery_app
from webhook_gateway.core.clock import utcnow
from webhook_gateway.core.config import settings
from webhook_gateway.core.logging import get_logger, log_async_operation, set_correlation_id
from webhook_gateway.db.database import task_session_factory
from webhook_gateway.domain.services.retry_service import RetryScheduler
from webhook_gateway.domain.services.storage_service import EventStorageService

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="webhook_gateway.workers.tasks.retry_failed_events")
def retry_failed_events():
    """
    Replay due rows from webhook_events_failed.

    Runs every RETRY_INTERVAL_SECONDS. Rows are claimed with a lease so an
    overlapping run (or a second worker) skips them.
    """
    if not settings.ENABLE_RETRY:
        return {"skipped": "retry disabled"}

    async def _retry():
        async with task_session_factory() as session_factory:
            store = EventStorageService.from_settings(session_factory, settings)
            scheduler = RetryScheduler.from_settings(store, settings)
            result = await scheduler.tick()
            return result.as_dict()

    return run_async(_retry())


@celery_app.task(name="webhook_gateway.workers.tasks.archive_old_events")
def archive_old_events(days: int | None = None):
    """Move events older than DATA_RETENTION_DAYS to webhook_events_archive"""
    if not settings.ENABLE_ARCHIVING:
        return {"skipped": "archiving disabled"}

    retention_days = days or settings.DATA_RETENTION_DAYS

    @log_async_operation("archive_old_events")
    async def _archive():
        async with task_session_factory() as session_factory:
            store = EventStorageService.from_settings(session_factory, settings)
            cutoff = utcnow() - timedelta(days=retention_days)
            archived = await store.archive_before(cutoff)
            logger.info(
                "Archived old webhook events",
                extra_data={"archived": archived, "retention_days": retention_days},
            )
            return {"archived": archived}

    return run_async(_archive())


@celery_app.task(name="webhook_gateway.workers.tasks.purge_abandoned_failed_events")
def purge_abandoned_failed_events(days: int | None = None):
    """Delete abandoned failed events after FAILED_EVENT_RETENTION_DAYS"""
    retention_days = days or settings.FAILED_EVENT_RETENTION_DAYS

    async def _purge():
        async with task_session_factory() as session_factory:
            store = EventStorageService.from_settings(session_factory, settings)
            cutoff = utcnow() - timedelta(days=retention_days)
            deleted = await store.purge_abandoned(cutoff)
            logger.info(
                "Purged abandoned failed events",
                extra_data={"deleted": deleted, "retention_days": retention_days},
            )
            return {"deleted": deleted}

    return run_async(_purge())
