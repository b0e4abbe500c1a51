"""
Batch queue between ingestion and storage.

One queue per process, built at startup and held on ``app.state``. The
pending list and timer handle are guarded by a single lock, and storage is
always called outside it.
"""
import asyncio
import enum
import threading
from dataclasses import dataclass
from typing import Protocol, Sequence

from webhook_gateway.core.exceptions import BatchStorageError, StorageFailureError
from webhook_gateway.core.logging import get_logger
from webhook_gateway.core.metrics import MetricsSink, NullMetrics
from webhook_gateway.domain.events import NormalizedEvent
from webhook_gateway.domain.services.dedup_service import Deduplicator
from webhook_gateway.domain.services.storage_service import BatchResult, StoreResult, StoreStatus

logger = get_logger(__name__)


class EventWriter(Protocol):
    async def store_one(self, event: NormalizedEvent, *, record_failure: bool = True) -> StoreResult: ...

    async def store_batch(self, events: Sequence[NormalizedEvent]) -> BatchResult: ...


class EnqueueStatus(str, enum.Enum):
    QUEUED = "queued"
    STORED = "stored"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass(frozen=True)
class EnqueueResult:
    status: EnqueueStatus
    store_result: StoreResult | None = None


class BatchQueue:
    """
    Accumulates events and hands them to the writer in batches.

    A batch is flushed when it reaches ``batch_size`` (inline, by the caller
    that filled it) or ``batch_interval`` seconds after the first event of
    the batch arrived (from a timer). On a failed flush the events that did
    not make it to storage go back to the front of the queue.

    With ``enabled=False`` every event is written immediately and the store
    outcome is returned to the caller.
    """

    def __init__(
        self,
        writer: EventWriter,
        deduplicator: Deduplicator | None = None,
        *,
        batch_size: int = 50,
        batch_interval: float = 5.0,
        enabled: bool = True,
        flush_timeout: float = 30.0,
        metrics: MetricsSink | None = None,
    ) -> None:
        self.writer = writer
        self.deduplicator = deduplicator
        self.batch_size = batch_size
        self.batch_interval = batch_interval
        self.enabled = enabled
        self.flush_timeout = flush_timeout
        self.metrics = metrics or NullMetrics()

        self._pending: list[NormalizedEvent] = []
        self._timer: asyncio.TimerHandle | None = None
        self._flush_tasks: set[asyncio.Task] = set()
        self._closed = False
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, writer: EventWriter, deduplicator: Deduplicator | None, settings, metrics=None) -> "BatchQueue":
        return cls(
            writer,
            deduplicator,
            batch_size=settings.BATCH_SIZE,
            batch_interval=settings.BATCH_INTERVAL_SECONDS,
            enabled=settings.ENABLE_BATCHING,
            flush_timeout=settings.FLUSH_TIMEOUT_SECONDS,
            metrics=metrics,
        )

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def pending_timer(self) -> bool:
        with self._lock:
            return self._timer is not None

    async def enqueue(self, event: NormalizedEvent) -> EnqueueResult:
        if self.deduplicator is not None and self.deduplicator.is_duplicate(event):
            self.metrics.increment("events_duplicated")
            return EnqueueResult(EnqueueStatus.DUPLICATE)

        if not self.enabled or self._closed:
            try:
                result = await self.writer.store_one(event)
            except Exception:
                self._forget(event)
                raise
            self._count_store(result)
            if result.status is StoreStatus.FAILED:
                # a provider redelivery must reach storage again
                self._forget(event)
            return EnqueueResult(EnqueueStatus(result.status.value), result)

        with self._lock:
            self._pending.append(event)
            should_flush = len(self._pending) >= self.batch_size
            if not should_flush and self._timer is None:
                self._arm_timer_locked()
        self.metrics.increment("events_queued")

        if should_flush:
            # tracked for drain(); outlives a cancelled caller
            await asyncio.shield(self._start_flush())
        return EnqueueResult(EnqueueStatus.QUEUED)

    async def flush(self) -> BatchResult | None:
        """Hand the current batch to storage. Never raises for storage errors."""
        with self._lock:
            batch = self._pending
            self._pending = []
            self._disarm_timer_locked()

        if not batch:
            return None

        self.metrics.increment("flushes")
        try:
            result = await asyncio.wait_for(self.writer.store_batch(batch), timeout=self.flush_timeout)
        except BatchStorageError as e:
            if e.partial_result is not None:
                self._count_batch(e.partial_result)
            self._requeue(e.unstored, reason=e.message)
            return e.partial_result
        except StorageFailureError as e:
            self._requeue(batch, reason=e.message)
            return None
        except asyncio.TimeoutError:
            # chunks committed before the timeout come back as duplicates
            self._requeue(batch, reason=f"flush timed out after {self.flush_timeout}s")
            return None

        self._count_batch(result)
        logger.debug(
            "Flushed batch",
            extra_data={"size": len(batch), **result.counts()},
        )
        return result

    async def drain(self, timeout: float) -> int:
        """Flush everything left before shutdown; returns the number of events not stored"""
        with self._lock:
            self._closed = True
            self._disarm_timer_locked()

        try:
            await asyncio.wait_for(self._drain_pending(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("Queue drain timed out", extra_data={"timeout_seconds": timeout})

        remaining = self.size
        if remaining:
            logger.error(
                "Events not stored at shutdown",
                extra_data={"count": remaining},
            )
        else:
            logger.info("Batch queue drained")
        return remaining

    async def _drain_pending(self) -> None:
        while self._flush_tasks:
            results = await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Background flush failed", extra_data={"error": str(result)})

        while True:
            before = self.size
            if not before:
                return
            await self.flush()
            if self.size >= before:
                # storage is refusing writes; another pass will not help
                return

    def _arm_timer_locked(self) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.batch_interval, self._on_timer)

    def _disarm_timer_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
        self._start_flush()

    def _start_flush(self) -> asyncio.Task:
        task = asyncio.ensure_future(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)
        return task

    def _forget(self, event: NormalizedEvent) -> None:
        if self.deduplicator is not None:
            self.deduplicator.forget(event)

    def _requeue(self, events: list[NormalizedEvent], *, reason: str) -> None:
        with self._lock:
            self._pending[:0] = events
            if self._timer is None and not self._closed:
                self._arm_timer_locked()
            queued = len(self._pending)

        self.metrics.increment("flush_failures")
        self.metrics.increment("events_requeued", len(events))
        logger.warning(
            "Batch flush failed, events requeued",
            extra_data={"requeued": len(events), "queue_size": queued, "error": reason},
        )

    def _count_store(self, result: StoreResult) -> None:
        if result.status is StoreStatus.STORED:
            self.metrics.increment("events_stored")
        elif result.status is StoreStatus.DUPLICATE:
            self.metrics.increment("events_duplicated")
        else:
            self.metrics.increment("events_failed")

    def _count_batch(self, result: BatchResult) -> None:
        self.metrics.increment("events_stored", len(result.stored))
        self.metrics.increment("events_duplicated", len(result.duplicates))
        self.metrics.increment("events_failed", len(result.failed))
