"""
In-memory deduplication of recently seen events.

This layer only absorbs bursts of provider retries before they reach the
queue. The unique constraint on ``webhook_events.event_hash`` stays
authoritative: everything still works, only less efficiently, with the
window cold or disabled.
"""
import threading
import time
from typing import Callable

from webhook_gateway.core.logging import get_logger
from webhook_gateway.domain.events import NormalizedEvent

logger = get_logger(__name__)


class RecentEventWindow:
    """
    Time-windowed set of keys.

    An entry older than ``window_seconds`` counts as absent on lookup even
    before ``sweep()`` removes it, so expiry does not depend on sweep timing.
    """

    def __init__(
        self,
        window_seconds: float = 5.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}
        # threading.Lock: also used from Celery workers with their own loops
        self._lock = threading.Lock()

    def check_and_register(self, key: str) -> bool:
        """True if ``key`` was seen within the window; otherwise record it and return False"""
        now = self._clock()
        with self._lock:
            seen_at = self._seen.get(key)
            if seen_at is not None and now - seen_at < self.window_seconds:
                return True
            self._seen[key] = now
            return False

    def forget(self, key: str) -> None:
        with self._lock:
            self._seen.pop(key, None)

    def contains(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            seen_at = self._seen.get(key)
            return seen_at is not None and now - seen_at < self.window_seconds

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed"""
        cutoff = self._clock() - self.window_seconds
        with self._lock:
            expired = [key for key, seen_at in self._seen.items() if seen_at <= cutoff]
            for key in expired:
                del self._seen[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class Deduplicator:
    """Drops events whose hash was seen within the window"""

    def __init__(self, window: RecentEventWindow, *, enabled: bool = True) -> None:
        self.window = window
        self.enabled = enabled

    def is_duplicate(self, event: NormalizedEvent) -> bool:
        """Registers the event as a side effect when it is new"""
        if not self.enabled:
            return False
        duplicate = self.window.check_and_register(event.event_hash)
        if duplicate:
            logger.info(
                "Duplicate event dropped by recent-event window",
                extra_data={
                    "source": event.source.value,
                    "event_type": event.event_type,
                    "delivery_id": event.delivery_id,
                    "event_hash": event.event_hash,
                },
            )
        return duplicate

    def forget(self, event: NormalizedEvent) -> None:
        """Drop the event from the window after a failed write"""
        self.window.forget(event.event_hash)

    def sweep(self) -> int:
        removed = self.window.sweep()
        if removed:
            logger.debug(
                "Swept recent-event window",
                extra_data={"removed": removed, "remaining": len(self.window)},
            )
        return removed
