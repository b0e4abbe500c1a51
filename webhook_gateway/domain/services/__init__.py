"""
Domain Services
"""
from webhook_gateway.domain.services.signature_service import SignatureVerifier, VerificationResult
from webhook_gateway.domain.services.dedup_service import Deduplicator, RecentEventWindow
from webhook_gateway.domain.services.storage_service import (
    BatchResult,
    EventStorageService,
    StoreResult,
    StoreStatus,
)
from webhook_gateway.domain.services.batch_queue import BatchQueue, EnqueueResult, EnqueueStatus
from webhook_gateway.domain.services.retry_service import RetryScheduler, RetryTickResult
from webhook_gateway.domain.services.ingestion_service import IngestionService, IngestResult, IngestStatus

__all__ = [
    "SignatureVerifier",
    "VerificationResult",
    "Deduplicator",
    "RecentEventWindow",
    "EventStorageService",
    "StoreResult",
    "StoreStatus",
    "BatchResult",
    "BatchQueue",
    "EnqueueResult",
    "EnqueueStatus",
    "RetryScheduler",
    "RetryTickResult",
    "IngestionService",
    "IngestResult",
    "IngestStatus",
]
