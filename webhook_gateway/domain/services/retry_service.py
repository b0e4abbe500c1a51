"""
Retry scheduler for events that failed to store.

Each tick picks due rows from ``webhook_events_failed`` and replays them
through the storage writer. A row is deleted once its event is stored (or
found already stored), rescheduled with exponential backoff on failure, and
marked abandoned when it runs out of attempts.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from pydantic import ValidationError

from webhook_gateway.core.clock import utcnow
from webhook_gateway.core.logging import get_logger, log_async_operation
from webhook_gateway.db.models import FailedEvent
from webhook_gateway.domain.backoff import calculate_backoff_seconds
from webhook_gateway.domain.events import NormalizedEvent
from webhook_gateway.domain.services.storage_service import EventStorageService

logger = get_logger(__name__)


@dataclass
class RetryTickResult:
    selected: int = 0
    resolved: int = 0
    rescheduled: int = 0
    abandoned: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "selected": self.selected,
            "resolved": self.resolved,
            "rescheduled": self.rescheduled,
            "abandoned": self.abandoned,
        }


class RetryScheduler:
    def __init__(
        self,
        store: EventStorageService,
        *,
        base_seconds: float = 0.5,
        max_backoff_seconds: float = 3600.0,
        batch_limit: int = 100,
        lease_seconds: float | None = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.base_seconds = base_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.batch_limit = batch_limit
        self.lease_seconds = lease_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, store: EventStorageService, settings) -> "RetryScheduler":
        return cls(
            store,
            base_seconds=settings.RETRY_BASE_SECONDS,
            max_backoff_seconds=settings.RETRY_MAX_BACKOFF_SECONDS,
            batch_limit=settings.RETRY_BATCH_LIMIT,
        )

    def next_retry_at(self, retry_count: int, now: datetime) -> datetime:
        delay = calculate_backoff_seconds(
            retry_count,
            base_seconds=self.base_seconds,
            max_backoff_seconds=self.max_backoff_seconds,
        )
        return now + timedelta(seconds=delay)

    @log_async_operation("retry_tick")
    async def tick(self) -> RetryTickResult:
        now = self._clock()
        rows = await self.store.select_retry_eligible(
            self.batch_limit, now, lease_seconds=self.lease_seconds
        )
        result = RetryTickResult(selected=len(rows))

        for row in rows:
            await self._retry(row, now, result)

        if rows:
            logger.info("Retry tick finished", extra_data=result.as_dict())
        return result

    async def _retry(self, row: FailedEvent, now: datetime, result: RetryTickResult) -> None:
        try:
            event = NormalizedEvent.model_validate(row.event_data)
        except ValidationError as e:
            # stored data can never be replayed; keep the row for inspection
            await self.store.update_failed_event(
                row.id,
                retry_count=row.max_retries,
                next_retry_at=now,
                error_message=f"unreadable event data: {e}",
                error_kind="permanent",
                abandoned=True,
            )
            result.abandoned += 1
            logger.error(
                "Failed event has unreadable data",
                extra_data={"failed_event_id": row.id, "event_hash": row.event_hash},
            )
            return

        outcome = await self.store.store_one(event, record_failure=False)
        if outcome.persisted:
            await self.store.delete_failed_event(row.id)
            result.resolved += 1
            logger.info(
                "Failed event resolved",
                extra_data={
                    "failed_event_id": row.id,
                    "event_hash": row.event_hash,
                    "status": outcome.status.value,
                    "attempt": row.retry_count + 1,
                },
            )
            return

        retry_count = row.retry_count + 1
        abandoned = retry_count >= row.max_retries
        next_retry_at = self.next_retry_at(retry_count, now)
        await self.store.update_failed_event(
            row.id,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            error_message=outcome.error,
            error_kind="transient" if outcome.transient else "permanent",
            abandoned=abandoned,
        )

        if abandoned:
            result.abandoned += 1
            logger.error(
                "Failed event abandoned after max retries",
                extra_data={
                    "failed_event_id": row.id,
                    "event_hash": row.event_hash,
                    "retry_count": retry_count,
                    "error": outcome.error,
                },
            )
        else:
            result.rescheduled += 1
            logger.warning(
                "Failed event rescheduled",
                extra_data={
                    "failed_event_id": row.id,
                    "retry_count": retry_count,
                    "next_retry_at": next_retry_at.isoformat(),
                },
            )
