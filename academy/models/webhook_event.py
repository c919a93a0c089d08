from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, Index
from academy.db.base_class import Base


class WebhookEventRecord(Base):
    """Idempotency ledger entry for one processor event id.

    ``processed`` is the only gate against re-applying an event's side effects.
    """

    __tablename__ = "stripe_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(255), nullable=False)
    payload = Column(Text, nullable=True)

    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    processing_attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_stripe_webhook_events_event_type", "event_type"),
    )
