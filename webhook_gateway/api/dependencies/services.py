"""
Per-app service container and FastAPI dependencies.

Everything stateful (queue, dedup window, counters) is built once per app in
``build_services`` and stored on ``app.state.services``; handlers reach it
through the ``get_*`` dependencies below.
"""
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_gateway.core.config import Settings
from webhook_gateway.core.metrics import IngestionMetrics
from webhook_gateway.domain.services import (
    BatchQueue,
    Deduplicator,
    EventStorageService,
    IngestionService,
    RecentEventWindow,
    RetryScheduler,
    SignatureVerifier,
)


@dataclass
class GatewayServices:
    settings: Settings
    metrics: IngestionMetrics
    verifier: SignatureVerifier
    deduplicator: Deduplicator
    storage: EventStorageService
    queue: BatchQueue
    ingestion: IngestionService
    retry_scheduler: RetryScheduler


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    verifier: SignatureVerifier | None = None,
) -> GatewayServices:
    metrics = IngestionMetrics()
    verifier = verifier or SignatureVerifier.from_settings(settings)
    deduplicator = Deduplicator(
        RecentEventWindow(settings.DEDUP_WINDOW_SECONDS),
        enabled=settings.ENABLE_DEDUP_CACHE,
    )
    storage = EventStorageService.from_settings(session_factory, settings)
    queue = BatchQueue.from_settings(storage, deduplicator, settings, metrics=metrics)
    return GatewayServices(
        settings=settings,
        metrics=metrics,
        verifier=verifier,
        deduplicator=deduplicator,
        storage=storage,
        queue=queue,
        ingestion=IngestionService(verifier, queue, metrics),
        retry_scheduler=RetryScheduler.from_settings(storage, settings),
    )


def get_services(request: Request) -> GatewayServices:
    return request.app.state.services


def get_ingestion_service(request: Request) -> IngestionService:
    return get_services(request).ingestion
