from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, text
from academy.db.base_class import Base


class EnrollmentStatus:
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Enrollment(Base):
    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    # Exactly one of these three is populated
    course_id = Column(String(255), nullable=True, index=True)
    program_type = Column(String(64), nullable=True)
    membership_tier = Column(String(32), nullable=True)
    # "course:<id>", "program:<type>" or "membership:<tier>"
    product_key = Column(String(320), nullable=False)

    status = Column(String(16), nullable=False, default=EnrollmentStatus.ACTIVE, index=True)
    enrolled_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    grace_period_ends_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)

    payment_intent_id = Column(String(255), nullable=True, index=True)
    subscription_id = Column(String(255), nullable=True, index=True)

    meta = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        # At most one active enrollment per (user, product)
        Index(
            "uq_enrollments_active_product",
            "user_id",
            "product_key",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    @property
    def access_ends_at(self):
        return self.grace_period_ends_at or self.expires_at

    def __repr__(self) -> str:
        return f"<Enrollment id={self.id} user={self.user_id} {self.product_key} {self.status}>"
