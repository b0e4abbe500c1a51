"""
Failed Event Model - retry store for events whose write failed.
"""
from sqlalchemy import Column, Integer, String, DateTime, Index, JSON, Text, text

from webhook_gateway.core.clock import utcnow
from webhook_gateway.db.database import Base


class FailedEvent(Base):
    """Event awaiting a retry, or abandoned once ``retry_count`` reaches ``max_retries``"""

    __tablename__ = "webhook_events_failed"

    id = Column(Integer, primary_key=True, autoincrement=True)

    event_hash = Column(String(64), nullable=False, index=True)
    source = Column(String(20), nullable=False)
    event_type = Column(String(100), nullable=False)
    event_data = Column(JSON, nullable=False)  # full normalized event

    error_message = Column(Text, nullable=True)
    error_kind = Column(String(20), nullable=True)  # transient | permanent

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime, nullable=False)
    abandoned_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index(
            "ix_webhook_events_failed_due",
            "next_retry_at",
            postgresql_where=text("abandoned_at IS NULL"),
        ),
        Index("ix_webhook_events_failed_created_at", "created_at"),
    )

    @property
    def is_abandoned(self) -> bool:
        return self.abandoned_at is not None
