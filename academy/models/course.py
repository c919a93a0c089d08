from sqlalchemy import Column, Integer, String, Boolean
from academy.db.base_class import Base


class Course(Base):
    __tablename__ = "courses"

    id = Column(String(255), primary_key=True)
    title = Column(String(255), nullable=False)
    # Minor currency units
    price = Column(Integer, nullable=True)
    # None means lifetime access
    access_duration_days = Column(Integer, nullable=True)
    published = Column(Boolean, default=True, nullable=False)
