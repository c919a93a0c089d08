from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON
from academy.db.base_class import Base


class InstallmentPlan(Base):
    __tablename__ = "installment_plans"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    # Intent of the first installment
    payment_intent_id = Column(String(255), nullable=False, unique=True)
    total_amount = Column(Integer, nullable=False)
    installment_amount = Column(Integer, nullable=False)
    total_installments = Column(Integer, nullable=False)
    current_installment = Column(Integer, nullable=False, default=1)
    status = Column(String(16), nullable=False, default="active")
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
