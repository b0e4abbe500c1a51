"""
Retry scheduler tests - webhook_gateway/domain/services/retry_service.py

Covers:
- Successful replay deletes the failed row
- Already-stored events resolve as duplicates
- Backoff grows with retry_count, row abandoned at max_retries
- Abandoned rows never selected again
- Unreadable event data abandoned without a write attempt
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from webhook_gateway.core.clock import utcnow
from webhook_gateway.core.exceptions import StorageFailureError
from webhook_gateway.db.models import FailedEvent, WebhookEvent
from webhook_gateway.domain.events import Source
from webhook_gateway.domain.normalizers import normalize
from webhook_gateway.domain.services.retry_service import RetryScheduler
from webhook_gateway.domain.services.storage_service import EventStorageService

from tests.conftest import github_push_payload


class SteppingClock:
    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _event(delivery: str = "d-1"):
    return normalize(Source.GITHUB, "push", github_push_payload(), headers={"x-github-delivery": delivery})


async def _failed_row(session_factory, failed_event_id: int) -> FailedEvent | None:
    async with session_factory() as session:
        return await session.get(FailedEvent, failed_event_id)


class _BrokenWrites:
    """Patch context making every event write fail with a lock timeout"""

    def __init__(self) -> None:
        self.calls = 0

    def __enter__(self):
        async def _write(_self, session, event):
            self.calls += 1
            raise OperationalError("INSERT INTO webhook_events", {}, Exception("database is locked"))

        self._patch = patch.object(EventStorageService, "_write_event", _write)
        self._patch.start()
        return self

    def __exit__(self, *exc_info):
        self._patch.stop()


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def scheduler(store, clock) -> RetryScheduler:
    return RetryScheduler(store, base_seconds=0.5, max_backoff_seconds=3600.0, clock=clock)


class TestResolve:

    @pytest.mark.asyncio
    async def test_replay_stores_and_deletes(self, store, scheduler, clock, session_factory) -> None:
        event = _event()
        failed_id = await store.insert_failed_event(event, StorageFailureError("down", transient=True))
        clock.advance(1)

        result = await scheduler.tick()

        assert result.as_dict() == {"selected": 1, "resolved": 1, "rescheduled": 0, "abandoned": 0}
        assert await _failed_row(session_factory, failed_id) is None
        async with session_factory() as session:
            stored = await session.scalar(select(WebhookEvent).where(WebhookEvent.event_hash == event.event_hash))
        assert stored is not None
        assert stored.request_id == event.request_id

    @pytest.mark.asyncio
    async def test_already_stored_resolves_as_duplicate(self, store, scheduler, clock, session_factory) -> None:
        event = _event()
        await store.store_one(event)
        failed_id = await store.insert_failed_event(event, StorageFailureError("timeout", transient=True))
        clock.advance(1)

        result = await scheduler.tick()

        assert result.resolved == 1
        assert await _failed_row(session_factory, failed_id) is None
        async with session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(WebhookEvent)) == 1

    @pytest.mark.asyncio
    async def test_not_due_rows_untouched(self, store, scheduler) -> None:
        await store.insert_failed_event(_event(), StorageFailureError("down", transient=True))
        result = await scheduler.tick()
        assert result.selected == 0


class TestBackoffAndAbandon:

    @pytest.mark.asyncio
    async def test_rescheduled_with_growing_backoff(self, store, scheduler, clock, session_factory) -> None:
        failed_id = await store.insert_failed_event(_event(), StorageFailureError("down", transient=True))
        delays = []

        with _BrokenWrites():
            for _ in range(2):
                clock.advance(3600)
                tick_time = clock.now
                result = await scheduler.tick()
                assert result.rescheduled == 1
                row = await _failed_row(session_factory, failed_id)
                delays.append((row.next_retry_at - tick_time).total_seconds())

        assert row.retry_count == 2
        assert row.error_kind == "transient"
        assert "database is locked" in row.error_message
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_abandoned_after_max_retries(self, store, scheduler, clock, session_factory) -> None:
        failed_id = await store.insert_failed_event(_event(), StorageFailureError("down", transient=True))

        with _BrokenWrites() as broken:
            outcomes = []
            for _ in range(3):
                clock.advance(3600)
                outcomes.append((await scheduler.tick()).as_dict())

            assert [o["rescheduled"] for o in outcomes] == [1, 1, 0]
            assert outcomes[-1]["abandoned"] == 1
            assert broken.calls == 3

            # no further attempts, however much time passes
            clock.advance(86_400)
            assert (await scheduler.tick()).selected == 0
            assert broken.calls == 3

        row = await _failed_row(session_factory, failed_id)
        assert row.retry_count == 3
        assert row.is_abandoned

    @pytest.mark.asyncio
    async def test_unreadable_data_abandoned(self, store, scheduler, clock, session_factory) -> None:
        async with session_factory() as session:
            async with session.begin():
                row = FailedEvent(
                    event_hash="f" * 64,
                    source="github",
                    event_type="push",
                    event_data={"not": "an event"},
                    retry_count=0,
                    max_retries=3,
                    next_retry_at=utcnow(),
                )
                session.add(row)
                await session.flush()
                failed_id = row.id
        clock.advance(1)

        with _BrokenWrites() as broken:
            result = await scheduler.tick()

        assert result.abandoned == 1
        assert broken.calls == 0
        row = await _failed_row(session_factory, failed_id)
        assert row.is_abandoned
        assert row.error_kind == "permanent"


class TestNextRetryAt:

    @pytest.mark.unit
    def test_capped(self, store) -> None:
        scheduler = RetryScheduler(store, base_seconds=0.5, max_backoff_seconds=10)
        now = utcnow()
        assert scheduler.next_retry_at(0, now) == now + timedelta(seconds=0.5)
        assert scheduler.next_retry_at(50, now) == now + timedelta(seconds=10)
