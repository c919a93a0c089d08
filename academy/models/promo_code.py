from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON
from academy.db.base_class import Base


class PromoCode(Base):
    __tablename__ = "promotional_codes"

    id = Column(Integer, primary_key=True, index=True)
    # Stored upper-case; lookups upper-case the input
    code = Column(String(64), nullable=False, unique=True, index=True)
    active = Column(Boolean, default=True, nullable=False)

    discount_type = Column(String(16), nullable=False)  # percentage | fixed
    discount_value = Column(Integer, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    max_uses = Column(Integer, nullable=True)
    times_used = Column(Integer, default=0, nullable=False)
    # Product types the code applies to; empty means all
    applicable_to = Column(JSON, nullable=True)
    minimum_purchase_amount = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __init__(self, **kwargs):
        if kwargs.get("code"):
            kwargs["code"] = kwargs["code"].upper()
        super().__init__(**kwargs)
