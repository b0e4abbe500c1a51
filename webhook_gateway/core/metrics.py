"""
In-process ingestion counters.

The ingestion core only needs ``increment(name, delta)``; the hourly
per-source buckets live in the database (``webhook_event_metrics``) and are
written by the storage service. These counters back the ``/metrics`` JSON
endpoint and reset on restart.
"""
import threading
from datetime import datetime, timezone
from typing import Protocol


class MetricsSink(Protocol):
    def increment(self, name: str, delta: int = 1) -> None: ...


class IngestionMetrics:
    """Thread-safe named counters plus the time of the last accepted event"""

    COUNTERS = (
        "requests_received",
        "auth_failures",
        "malformed_payloads",
        "challenges_answered",
        "events_queued",
        "events_stored",
        "events_duplicated",
        "events_failed",
        "flushes",
        "flush_failures",
        "events_requeued",
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = dict.fromkeys(self.COUNTERS, 0)
        self._last_event_at: datetime | None = None

    def increment(self, name: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + delta
            if name == "events_queued" or name == "events_stored":
                self._last_event_at = datetime.now(timezone.utc)

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "last_event_at": self._last_event_at.isoformat() if self._last_event_at else None,
            }

    def reset(self) -> None:
        with self._lock:
            self._counters = dict.fromkeys(self.COUNTERS, 0)
            self._last_event_at = None


class NullMetrics:
    """Sink that discards increments"""

    def increment(self, name: str, delta: int = 1) -> None:
        return None
