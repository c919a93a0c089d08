from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from academy.db.base_class import Base


class ScheduledNotification(Base):
    __tablename__ = "scheduled_notifications"

    id = Column(Integer, primary_key=True, index=True)
    enrollment_id = Column(Integer, ForeignKey("enrollments.id"), nullable=False, index=True)
    notification_type = Column(String(32), nullable=False)
    scheduled_for = Column(DateTime, nullable=False, index=True)
    status = Column(String(16), nullable=False, default="pending")  # pending | sent | canceled
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
