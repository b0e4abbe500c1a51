"""
Event Metric Model - hourly counters per source and event type.
"""
from sqlalchemy import Column, Date, DateTime, Integer, String, UniqueConstraint

from webhook_gateway.core.clock import utcnow
from webhook_gateway.db.database import Base

METRIC_BUCKET_CONSTRAINT = "uq_webhook_event_metrics_bucket"


class EventMetric(Base):
    __tablename__ = "webhook_event_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)

    date = Column(Date, nullable=False)
    hour = Column(Integer, nullable=False)
    source = Column(String(20), nullable=False)
    event_type = Column(String(100), nullable=False)

    total_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    duplicate_count = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("date", "hour", "source", "event_type", name=METRIC_BUCKET_CONSTRAINT),
    )
