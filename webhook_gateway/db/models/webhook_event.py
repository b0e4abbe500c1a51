"""
Webhook Event Model - canonical normalized events.

``event_hash`` is the authoritative deduplication key: at most one row per
hash ever exists here.
"""
import uuid

from sqlalchemy import Column, String, DateTime, Index, JSON, UniqueConstraint

from webhook_gateway.core.clock import utcnow
from webhook_gateway.db.database import Base

EVENT_HASH_CONSTRAINT = "uq_webhook_events_event_hash"


class WebhookEvent(Base):
    """One stored delivery, normalized"""

    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    source = Column(String(20), nullable=False)
    event_type = Column(String(100), nullable=False)
    raw_event_type = Column(String(100), nullable=True)
    action = Column(String(100), nullable=True)

    repository = Column(String(255), nullable=True)
    repository_id = Column(String(100), nullable=True)
    organization = Column(String(255), nullable=True)
    organization_id = Column(String(100), nullable=True)

    actor = Column(String(255), nullable=True)
    actor_id = Column(String(100), nullable=True)
    actor_type = Column(String(50), nullable=True)
    actor_email = Column(String(255), nullable=True)

    channel = Column(String(255), nullable=True)
    channel_id = Column(String(100), nullable=True)
    channel_type = Column(String(50), nullable=True)

    target_entity = Column(String(500), nullable=True)
    target_entity_id = Column(String(255), nullable=True)
    target_entity_type = Column(String(100), nullable=True)

    delivery_id = Column(String(255), nullable=True)
    webhook_id = Column(String(255), nullable=True)
    request_id = Column(String(64), nullable=True)

    payload = Column(JSON, nullable=False)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=True)
    additional_context = Column(JSON, nullable=True)

    event_hash = Column(String(64), nullable=False)

    timestamp = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("event_hash", name=EVENT_HASH_CONSTRAINT),
        Index("ix_webhook_events_source_type_created", "source", "event_type", "created_at"),
        Index("ix_webhook_events_delivery_id", "delivery_id"),
        Index("ix_webhook_events_created_at", "created_at"),
    )
