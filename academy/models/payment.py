# academy/models/payment.py
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index
from academy.db.base_class import Base


class PaymentStatus:
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    # PaymentIntent id at the processor; the key every webhook resolves against
    stripe_payment_intent_id = Column(String(255), nullable=False, unique=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True)
    # Filled in once the intent succeeds; refunds and disputes reference the charge
    stripe_charge_id = Column(String(255), nullable=True, index=True)

    # Minor currency units, tax included
    amount = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False, default="usd")
    status = Column(String(32), nullable=False, default=PaymentStatus.PENDING, index=True)

    product_type = Column(String(32), nullable=False)
    product_id = Column(String(255), nullable=False)
    product_name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)

    # Exactly what was sent to the processor as intent metadata
    meta = Column("metadata", JSON, nullable=False, default=dict)

    failure_code = Column(String(64), nullable=True)
    failure_message = Column(Text, nullable=True)

    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payments_user_status", "user_id", "status"),
    )
