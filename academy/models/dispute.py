from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from academy.db.base_class import Base


class Dispute(Base):
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, index=True)
    stripe_dispute_id = Column(String(255), nullable=False, unique=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, index=True)
    user_id = Column(String(64), nullable=True)
    stripe_charge_id = Column(String(255), nullable=True)
    amount = Column(Integer, nullable=True)
    currency = Column(String(8), nullable=True)
    status = Column(String(64), nullable=False)
    reason = Column(String(64), nullable=True)
    evidence_due_by = Column(DateTime, nullable=True)
    evidence_submitted = Column(Boolean, default=False, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
