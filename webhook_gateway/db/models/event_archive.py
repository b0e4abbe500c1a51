"""
Archived Event Model - events moved out of ``webhook_events`` by retention.
"""
from sqlalchemy import Column, DateTime, Index, Integer, JSON, String

from webhook_gateway.core.clock import utcnow
from webhook_gateway.db.database import Base


class ArchivedEvent(Base):
    __tablename__ = "webhook_events_archive"

    id = Column(Integer, primary_key=True, autoincrement=True)

    original_event_id = Column(String(36), nullable=False)
    event_hash = Column(String(64), nullable=False)
    source = Column(String(20), nullable=False)
    event_type = Column(String(100), nullable=False)
    delivery_id = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=False)

    event_created_at = Column(DateTime, nullable=False)
    archived_at = Column(DateTime, nullable=False, default=utcnow)
    archive_reason = Column(String(100), nullable=False, default="retention_policy")

    __table_args__ = (
        Index("ix_webhook_events_archive_event_hash", "event_hash"),
    )
