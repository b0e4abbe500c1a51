"""
Event storage: persists normalized events with idempotency, hourly metrics
and a retry store for failed writes.

Single events and batches share one row path: SELECT by ``event_hash``, then
INSERT inside a savepoint, with a unique violation on ``event_hash`` counted
as a duplicate. Batches run one transaction per chunk. A permanent row error
fails only that row, which is recorded as a ``FailedEvent`` in the same
transaction. A transient error aborts the chunk, and the caller gets a
``BatchStorageError`` naming exactly the events that were not stored.
"""
import asyncio
import enum
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_gateway.core.clock import utcnow
from webhook_gateway.core.exceptions import (
    BatchStorageError,
    StorageFailureError,
    classify_storage_error,
)
from webhook_gateway.core.logging import get_logger
from webhook_gateway.db.compat import upsert_increment
from webhook_gateway.db.models import ArchivedEvent, EventMetric, FailedEvent, WebhookEvent
from webhook_gateway.db.models.webhook_event import EVENT_HASH_CONSTRAINT
from webhook_gateway.domain.backoff import calculate_backoff_seconds
from webhook_gateway.domain.events import NormalizedEvent

logger = get_logger(__name__)

STORAGE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)

_METRIC_KEY_COLUMNS = ["date", "hour", "source", "event_type"]
_METRIC_COUNTERS = ["total_count", "success_count", "failed_count", "duplicate_count"]


class StoreStatus(str, enum.Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass
class StoreResult:
    status: StoreStatus
    event_hash: str
    event_id: str | None = None
    error: str | None = None
    transient: bool | None = None
    failed_event_id: int | None = None

    @property
    def persisted(self) -> bool:
        """The event is in ``webhook_events`` (now or from an earlier delivery)"""
        return self.status in (StoreStatus.STORED, StoreStatus.DUPLICATE)


@dataclass
class BatchResult:
    stored: list[StoreResult] = field(default_factory=list)
    duplicates: list[StoreResult] = field(default_factory=list)
    failed: list[StoreResult] = field(default_factory=list)

    def add(self, result: StoreResult) -> None:
        if result.status is StoreStatus.STORED:
            self.stored.append(result)
        elif result.status is StoreStatus.DUPLICATE:
            self.duplicates.append(result)
        else:
            self.failed.append(result)

    def merge(self, other: "BatchResult") -> None:
        self.stored.extend(other.stored)
        self.duplicates.extend(other.duplicates)
        self.failed.extend(other.failed)

    @property
    def total(self) -> int:
        return len(self.stored) + len(self.duplicates) + len(self.failed)

    def counts(self) -> dict[str, int]:
        return {
            "stored": len(self.stored),
            "duplicates": len(self.duplicates),
            "failed": len(self.failed),
        }


def _is_event_hash_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    return EVENT_HASH_CONSTRAINT in message or "event_hash" in message


class EventStorageService:
    """Storage writer and retry store over an async session factory"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retry_enabled: bool = True,
        max_retries: int = 3,
        retry_base_seconds: float = 0.5,
        retry_max_backoff_seconds: float = 3600.0,
        chunk_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.retry_enabled = retry_enabled
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_backoff_seconds = retry_max_backoff_seconds
        self.chunk_size = chunk_size
        self._clock = clock

    @classmethod
    def from_settings(cls, session_factory: async_sessionmaker[AsyncSession], settings) -> "EventStorageService":
        return cls(
            session_factory,
            retry_enabled=settings.ENABLE_RETRY,
            max_retries=settings.MAX_RETRIES,
            retry_base_seconds=settings.RETRY_BASE_SECONDS,
            retry_max_backoff_seconds=settings.RETRY_MAX_BACKOFF_SECONDS,
            chunk_size=settings.BATCH_CHUNK_SIZE,
        )

    # ------------------------------------------------------------------
    # Event writes
    # ------------------------------------------------------------------

    async def store_one(self, event: NormalizedEvent, *, record_failure: bool = True) -> StoreResult:
        """Persist one event in its own transaction.

        Failures are reported in the result, not raised. With
        ``record_failure`` (and retry enabled) the event is also written to
        the retry store; the retry scheduler passes ``False`` because the
        event already has a row there.
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await self._write_event(session, event)
                    await self._upsert_metrics(session, event, result.status)
        except STORAGE_ERRORS as exc:
            error = classify_storage_error(exc)
            logger.error(
                "Failed to store event",
                extra_data={
                    "source": event.source.value,
                    "event_type": event.event_type,
                    "delivery_id": event.delivery_id,
                    "event_hash": event.event_hash,
                    "error": error.message,
                    "error_kind": error.kind,
                },
            )
            await self._record_failure_metrics([event])
            failed_event_id = None
            if record_failure and self.retry_enabled:
                failed_event_id = await self._insert_failed_event_safely(event, error)
            return StoreResult(
                status=StoreStatus.FAILED,
                event_hash=event.event_hash,
                error=error.message,
                transient=error.transient,
                failed_event_id=failed_event_id,
            )

        if result.status is StoreStatus.DUPLICATE:
            logger.info(
                "Duplicate event ignored by storage",
                extra_data={"event_hash": event.event_hash, "delivery_id": event.delivery_id},
            )
        return result

    async def store_batch(self, events: Sequence[NormalizedEvent]) -> BatchResult:
        """Persist a batch, one transaction per chunk.

        Raises ``BatchStorageError`` when a chunk fails as a whole; earlier
        chunks stay committed and are reported in ``partial_result``.
        """
        result = BatchResult()
        chunks = [list(events[i:i + self.chunk_size]) for i in range(0, len(events), self.chunk_size)]

        for index, chunk in enumerate(chunks):
            try:
                chunk_result = await self._store_chunk(chunk)
            except STORAGE_ERRORS as exc:
                error = classify_storage_error(exc)
                unstored = [event for pending in chunks[index:] for event in pending]
                logger.error(
                    "Batch chunk rolled back",
                    extra_data={
                        "chunk_index": index,
                        "chunk_size": len(chunk),
                        "unstored": len(unstored),
                        "committed": result.counts(),
                        "error": error.message,
                        "error_kind": error.kind,
                    },
                )
                await self._record_failure_metrics(chunk)
                raise BatchStorageError(
                    f"Batch write failed: {error.message}",
                    unstored=unstored,
                    partial_result=result,
                    transient=error.transient,
                ) from exc
            result.merge(chunk_result)

        logger.info("Stored event batch", extra_data={"size": len(events), **result.counts()})
        return result

    async def _store_chunk(self, chunk: list[NormalizedEvent]) -> BatchResult:
        chunk_result = BatchResult()
        row_failures: list[tuple[NormalizedEvent, StoreResult, StorageFailureError]] = []

        async with self._session_factory() as session:
            async with session.begin():
                for event in chunk:
                    try:
                        outcome = await self._write_event(session, event)
                    except SQLAlchemyError as exc:
                        error = classify_storage_error(exc)
                        if error.transient:
                            raise
                        logger.warning(
                            "Event row rejected in batch",
                            extra_data={"event_hash": event.event_hash, "error": error.message},
                        )
                        outcome = StoreResult(
                            status=StoreStatus.FAILED,
                            event_hash=event.event_hash,
                            error=error.message,
                            transient=False,
                        )
                        row_failures.append((event, outcome, error))
                    chunk_result.add(outcome)
                    await self._upsert_metrics(session, event, outcome.status)

                if row_failures and self.retry_enabled:
                    for event, outcome, error in row_failures:
                        row = self._failed_event_row(event, error)
                        session.add(row)
                        await session.flush()
                        outcome.failed_event_id = row.id

        return chunk_result

    async def _write_event(self, session: AsyncSession, event: NormalizedEvent) -> StoreResult:
        existing_id = await session.scalar(
            select(WebhookEvent.id).where(WebhookEvent.event_hash == event.event_hash)
        )
        if existing_id is not None:
            return StoreResult(StoreStatus.DUPLICATE, event.event_hash, event_id=existing_id)

        row = WebhookEvent(**event.to_row())
        try:
            async with session.begin_nested():
                session.add(row)
                await session.flush()
        except IntegrityError as exc:
            # lost a race with a concurrent writer of the same hash
            if _is_event_hash_conflict(exc):
                return StoreResult(StoreStatus.DUPLICATE, event.event_hash)
            raise

        return StoreResult(StoreStatus.STORED, event.event_hash, event_id=row.id)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def _upsert_metrics(
        self,
        session: AsyncSession,
        event: NormalizedEvent,
        status: StoreStatus,
        delta: int = 1,
    ) -> None:
        await self._upsert_bucket(session, event.source.value, event.event_type, status, delta)

    async def _upsert_bucket(
        self,
        session: AsyncSession,
        source: str,
        event_type: str,
        status: StoreStatus,
        delta: int,
        at: datetime | None = None,
    ) -> None:
        now = at or self._clock()
        values = {
            "date": now.date(),
            "hour": now.hour,
            "source": source,
            "event_type": event_type,
            "total_count": delta,
            "success_count": delta if status is StoreStatus.STORED else 0,
            "failed_count": delta if status is StoreStatus.FAILED else 0,
            "duplicate_count": delta if status is StoreStatus.DUPLICATE else 0,
            "updated_at": now,
        }
        stmt = upsert_increment(
            EventMetric.__table__,
            session.get_bind().dialect.name,
            key_columns=_METRIC_KEY_COLUMNS,
            values=values,
            counters=_METRIC_COUNTERS,
        )
        await session.execute(stmt)

    async def increment_metrics(
        self,
        source: str,
        event_type: str,
        status: StoreStatus,
        delta: int = 1,
        *,
        at: datetime | None = None,
    ) -> None:
        """Add ``delta`` attempts with ``status`` to the bucket for ``at`` (default: now).

        A single upsert statement; concurrent increments add up.
        """
        async with self._session_factory() as session:
            async with session.begin():
                await self._upsert_bucket(session, source, event_type, status, delta, at)

    async def _record_failure_metrics(self, events: Iterable[NormalizedEvent]) -> None:
        """Failure counts after the transaction holding them was rolled back"""
        events = list(events)
        groups = Counter((event.source.value, event.event_type) for event in events)
        try:
            for (source, event_type), count in groups.items():
                await self.increment_metrics(source, event_type, StoreStatus.FAILED, count)
        except STORAGE_ERRORS as exc:
            logger.error(
                "Could not record failure metrics",
                extra_data={"events": len(events), "error": str(exc)},
            )

    # ------------------------------------------------------------------
    # Retry store
    # ------------------------------------------------------------------

    def _failed_event_row(self, event: NormalizedEvent, error: StorageFailureError) -> FailedEvent:
        now = self._clock()
        backoff = calculate_backoff_seconds(
            0,
            base_seconds=self.retry_base_seconds,
            max_backoff_seconds=self.retry_max_backoff_seconds,
        )
        return FailedEvent(
            event_hash=event.event_hash,
            source=event.source.value,
            event_type=event.event_type,
            event_data=event.to_json_dict(),
            error_message=error.message[:2000],
            error_kind=error.kind,
            retry_count=0,
            max_retries=self.max_retries,
            next_retry_at=now + timedelta(seconds=backoff),
            abandoned_at=None if self.max_retries > 0 else now,
            created_at=now,
            updated_at=now,
        )

    async def insert_failed_event(self, event: NormalizedEvent, error: StorageFailureError) -> int:
        """Write ``event`` to the retry store with ``retry_count = 0``"""
        async with self._session_factory() as session:
            async with session.begin():
                row = self._failed_event_row(event, error)
                session.add(row)
                await session.flush()
                failed_event_id = row.id

        logger.warning(
            "Event queued for retry",
            extra_data={
                "failed_event_id": failed_event_id,
                "event_hash": event.event_hash,
                "next_retry_at": row.next_retry_at.isoformat(),
            },
        )
        return failed_event_id

    async def _insert_failed_event_safely(self, event: NormalizedEvent, error: StorageFailureError) -> int | None:
        try:
            return await self.insert_failed_event(event, error)
        except STORAGE_ERRORS as exc:
            logger.critical(
                "Event could not be written to the retry store",
                extra_data={
                    "event_hash": event.event_hash,
                    "delivery_id": event.delivery_id,
                    "source": event.source.value,
                    "error": str(exc),
                },
            )
            return None

    async def select_retry_eligible(
        self,
        limit: int,
        now: datetime | None = None,
        *,
        lease_seconds: float | None = None,
    ) -> list[FailedEvent]:
        """Due, non-abandoned failed events, oldest first.

        With ``lease_seconds`` the rows are claimed: ``next_retry_at`` moves
        forward by the lease so a concurrent scheduler skips them. On
        PostgreSQL the selection also uses ``FOR UPDATE SKIP LOCKED``.
        """
        now = now or self._clock()
        stmt = (
            select(FailedEvent)
            .where(
                FailedEvent.abandoned_at.is_(None),
                FailedEvent.retry_count < FailedEvent.max_retries,
                FailedEvent.next_retry_at <= now,
            )
            .order_by(FailedEvent.created_at, FailedEvent.id)
            .limit(limit)
        )

        async with self._session_factory() as session:
            async with session.begin():
                if session.get_bind().dialect.name == "postgresql":
                    stmt = stmt.with_for_update(skip_locked=True)
                rows = list((await session.scalars(stmt)).all())
                if rows and lease_seconds:
                    await session.execute(
                        update(FailedEvent)
                        .where(FailedEvent.id.in_([row.id for row in rows]))
                        .values(next_retry_at=now + timedelta(seconds=lease_seconds))
                    )
        return rows

    async def delete_failed_event(self, failed_event_id: int) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(FailedEvent).where(FailedEvent.id == failed_event_id)
                )
        return result.rowcount > 0

    async def update_failed_event(
        self,
        failed_event_id: int,
        *,
        retry_count: int,
        next_retry_at: datetime,
        error_message: str | None = None,
        error_kind: str | None = None,
        abandoned: bool = False,
    ) -> None:
        now = self._clock()
        values: dict[str, Any] = {
            "retry_count": retry_count,
            "next_retry_at": next_retry_at,
            "updated_at": now,
        }
        if error_message is not None:
            values["error_message"] = error_message[:2000]
        if error_kind is not None:
            values["error_kind"] = error_kind
        if abandoned:
            values["abandoned_at"] = now

        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(FailedEvent).where(FailedEvent.id == failed_event_id).values(**values)
                )

    async def purge_abandoned(self, cutoff: datetime) -> int:
        """Delete abandoned failed events older than ``cutoff``"""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(FailedEvent).where(
                        FailedEvent.abandoned_at.is_not(None),
                        FailedEvent.abandoned_at < cutoff,
                    )
                )
        return result.rowcount

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def archive_before(self, cutoff: datetime, *, batch_size: int = 1000) -> int:
        """Move events created before ``cutoff`` into ``webhook_events_archive``.

        Works in batches, each copy+delete in one transaction, so an
        interrupted run leaves every event in exactly one of the two tables.
        """
        archived = 0
        while True:
            async with self._session_factory() as session:
                async with session.begin():
                    rows = list((await session.scalars(
                        select(WebhookEvent)
                        .where(WebhookEvent.created_at < cutoff)
                        .order_by(WebhookEvent.created_at)
                        .limit(batch_size)
                    )).all())
                    if not rows:
                        break

                    now = self._clock()
                    session.add_all([
                        ArchivedEvent(
                            original_event_id=row.id,
                            event_hash=row.event_hash,
                            source=row.source,
                            event_type=row.event_type,
                            delivery_id=row.delivery_id,
                            payload=row.payload,
                            event_created_at=row.created_at,
                            archived_at=now,
                            archive_reason="retention_policy",
                        )
                        for row in rows
                    ])
                    await session.execute(
                        delete(WebhookEvent).where(WebhookEvent.id.in_([row.id for row in rows]))
                    )
            archived += len(rows)
            if len(rows) < batch_size:
                break

        return archived

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_metrics_summary(self, since: datetime | None = None) -> dict[str, Any]:
        """Totals per source from the hourly buckets plus retry store state"""
        since = since or (self._clock() - timedelta(hours=24))
        async with self._session_factory() as session:
            rows = (await session.execute(
                select(
                    EventMetric.source,
                    func.sum(EventMetric.total_count),
                    func.sum(EventMetric.success_count),
                    func.sum(EventMetric.failed_count),
                    func.sum(EventMetric.duplicate_count),
                )
                .where(EventMetric.date >= since.date())
                .group_by(EventMetric.source)
            )).all()

            pending = await session.scalar(
                select(func.count()).select_from(FailedEvent).where(FailedEvent.abandoned_at.is_(None))
            )
            abandoned = await session.scalar(
                select(func.count()).select_from(FailedEvent).where(FailedEvent.abandoned_at.is_not(None))
            )

        return {
            "since": since.date().isoformat(),
            "sources": {
                source: {
                    "total": int(total or 0),
                    "success": int(success or 0),
                    "failed": int(failed or 0),
                    "duplicate": int(duplicate or 0),
                }
                for source, total, success, failed, duplicate in rows
            },
            "retry_store": {"pending": int(pending or 0), "abandoned": int(abandoned or 0)},
        }

    async def check_health(self) -> bool:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
