from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime
from academy.db.base_class import Base


class CustomerProfile(Base):
    """Local mirror of a processor customer. Carries no access rights."""

    __tablename__ = "stripe_customers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=False, unique=True, index=True)
    email = Column(String(255), nullable=True)
    name = Column(String(255), nullable=True)
    phone = Column(String(64), nullable=True)

    default_payment_method_id = Column(String(255), nullable=True)
    default_payment_method_type = Column(String(32), nullable=True)
    default_payment_method_last4 = Column(String(4), nullable=True)
    default_payment_method_brand = Column(String(32), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
