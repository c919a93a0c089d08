from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON
from academy.db.base_class import Base

# Statuses that keep a membership usable
LIVE_STATUSES = ("active", "trialing")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), nullable=False, unique=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_price_id = Column(String(255), nullable=True)
    tier = Column(String(32), nullable=False)

    # Mirrors the processor's lifecycle verbatim
    status = Column(String(32), nullable=False, index=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)
    # Set once, when the processor reports the subscription deleted
    ended_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(255), nullable=True)

    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
