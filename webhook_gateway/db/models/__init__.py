"""
Database Models
"""
from webhook_gateway.db.models.webhook_event import WebhookEvent
from webhook_gateway.db.models.failed_event import FailedEvent
from webhook_gateway.db.models.event_metric import EventMetric
from webhook_gateway.db.models.event_archive import ArchivedEvent

__all__ = [
    "WebhookEvent",
    "FailedEvent",
    "EventMetric",
    "ArchivedEvent",
]
