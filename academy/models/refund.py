from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from academy.db.base_class import Base


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, index=True)
    stripe_refund_id = Column(String(255), nullable=False, unique=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    stripe_charge_id = Column(String(255), nullable=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=True)
    status = Column(String(32), nullable=False, default="succeeded")
    reason = Column(String(64), nullable=True)
    refunded_at = Column(DateTime, default=datetime.utcnow, nullable=False)
