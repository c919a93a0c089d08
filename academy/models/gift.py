from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from academy.db.base_class import Base


class GiftPurchase(Base):
    __tablename__ = "gift_purchases"

    id = Column(Integer, primary_key=True, index=True)
    purchaser_user_id = Column(String(64), nullable=False, index=True)
    recipient_email = Column(String(255), nullable=False)
    recipient_name = Column(String(255), nullable=True)
    gift_type = Column(String(16), nullable=False)  # course | program | membership
    amount = Column(Integer, nullable=False)
    personal_message = Column(Text, nullable=True)
    delivery_date = Column(DateTime, nullable=True)
    status = Column(String(16), nullable=False, default="pending")  # pending | paid
    payment_intent_id = Column(String(255), nullable=True, index=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
