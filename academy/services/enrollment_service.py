"""Enrollment / access ledger.

Every method takes the request-scoped ``AsyncSession`` first and only
flushes; the caller owns the transaction and decides when to commit.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from academy.errors import (
    AlreadyEnrolledError,
    EnrollmentNotFoundError,
    EnrollmentRevokedError,
)
from academy.models.enrollment import Enrollment, EnrollmentStatus
from academy.models.scheduled_notification import ScheduledNotification

# Days before expiry at which a warning goes out
WARNING_OFFSETS = (7, 3, 1)
# Below this many days left an enrollment may be extended
EXTENSION_WINDOW_DAYS = 30


@dataclass(frozen=True)
class ProductRef:
    kind: str  # course | program | membership
    value: str

    @classmethod
    def course(cls, course_id):
        return cls("course", str(course_id))

    @classmethod
    def program(cls, program_type):
        return cls("program", str(program_type))

    @classmethod
    def membership(cls, tier):
        return cls("membership", str(tier))

    @classmethod
    def of(cls, enrollment: Enrollment) -> "ProductRef":
        kind, _, value = enrollment.product_key.partition(":")
        return cls(kind, value)

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.value}"


@dataclass
class AccessStatus:
    enrollment_id: Optional[int]
    status: Optional[str]
    has_access: bool
    expires_at: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None
    days_remaining: Optional[int] = None
    is_expired: bool = False
    in_grace_period: bool = False
    can_extend: bool = False


def _apply_product(enrollment: Enrollment, product: ProductRef) -> None:
    if product.kind == "course":
        enrollment.course_id = product.value
    elif product.kind == "program":
        enrollment.program_type = product.value
    elif product.kind == "membership":
        enrollment.membership_tier = product.value
    else:
        raise ValueError(f"Unknown product kind: {product.kind}")
    enrollment.product_key = product.key


class EnrollmentLedger:
    def __init__(self, clock=datetime.utcnow):
        self.clock = clock

    # --- lookups -------------------------------------------------------

    async def get_enrollment(self, db: AsyncSession, enrollment_id: int) -> Optional[Enrollment]:
        result = await db.execute(select(Enrollment).filter(Enrollment.id == enrollment_id))
        return result.scalars().first()

    async def find_active(self, db: AsyncSession, user_id: str, product: ProductRef) -> Optional[Enrollment]:
        result = await db.execute(
            select(Enrollment).filter(
                Enrollment.user_id == str(user_id),
                Enrollment.product_key == product.key,
                Enrollment.status == EnrollmentStatus.ACTIVE,
            )
        )
        return result.scalars().first()

    async def find_by_payment_intent(self, db: AsyncSession, payment_intent_id: str) -> List[Enrollment]:
        result = await db.execute(
            select(Enrollment)
            .filter(Enrollment.payment_intent_id == payment_intent_id)
            .order_by(Enrollment.id)
        )
        return list(result.scalars().all())

    async def find_by_subscription(self, db: AsyncSession, subscription_id: str) -> List[Enrollment]:
        result = await db.execute(
            select(Enrollment)
            .filter(Enrollment.subscription_id == subscription_id)
            .order_by(Enrollment.id)
        )
        return list(result.scalars().all())

    async def get_active_enrollments(self, db: AsyncSession, user_id: str) -> List[Enrollment]:
        result = await db.execute(
            select(Enrollment)
            .filter(
                Enrollment.user_id == str(user_id),
                Enrollment.status == EnrollmentStatus.ACTIVE,
            )
            .order_by(Enrollment.enrolled_at.desc())
        )
        return list(result.scalars().all())

    async def get_expiring_enrollments(self, db: AsyncSession, within_days: int = 7) -> List[Enrollment]:
        now = self.clock()
        result = await db.execute(
            select(Enrollment)
            .filter(
                Enrollment.status == EnrollmentStatus.ACTIVE,
                Enrollment.expires_at.isnot(None),
                Enrollment.expires_at > now,
                Enrollment.expires_at <= now + timedelta(days=within_days),
            )
            .order_by(Enrollment.expires_at)
        )
        return list(result.scalars().all())

    # --- access --------------------------------------------------------

    def _within_access(self, enrollment: Enrollment, now: datetime) -> bool:
        if enrollment.status != EnrollmentStatus.ACTIVE:
            return False
        if enrollment.expires_at is None:
            return True
        return now <= enrollment.access_ends_at

    async def has_access(self, db: AsyncSession, user_id: str, product: ProductRef) -> bool:
        """Fresh read on every call; never cache the answer past a request."""
        enrollment = await self.find_active(db, user_id, product)
        if enrollment is None:
            return False
        return self._within_access(enrollment, self.clock())

    async def get_enrollment_status(self, db: AsyncSession, user_id: str, product: ProductRef) -> AccessStatus:
        """Summarize the user's standing for ``product``.

        Looks at the active enrollment first and falls back to the most recent
        one of any status, so an expired purchase still reports ``can_extend``.
        """
        enrollment = await self.find_active(db, user_id, product)
        if enrollment is None:
            result = await db.execute(
                select(Enrollment)
                .filter(
                    Enrollment.user_id == str(user_id),
                    Enrollment.product_key == product.key,
                )
                .order_by(Enrollment.enrolled_at.desc(), Enrollment.id.desc())
            )
            enrollment = result.scalars().first()
        if enrollment is None:
            return AccessStatus(enrollment_id=None, status=None, has_access=False)

        now = self.clock()
        has_access = self._within_access(enrollment, now)
        days_remaining = None
        is_expired = enrollment.status == EnrollmentStatus.EXPIRED
        in_grace = False

        if enrollment.expires_at is not None:
            seconds_left = (enrollment.expires_at - now).total_seconds()
            days_remaining = max(0, math.ceil(seconds_left / 86400))
            if now > enrollment.expires_at:
                if has_access:
                    in_grace = True
                else:
                    is_expired = True

        can_extend = enrollment.status != EnrollmentStatus.REVOKED and enrollment.expires_at is not None and (
            is_expired or (days_remaining is not None and days_remaining < EXTENSION_WINDOW_DAYS)
        )

        return AccessStatus(
            enrollment_id=enrollment.id,
            status=enrollment.status,
            has_access=has_access,
            expires_at=enrollment.expires_at,
            grace_period_ends_at=enrollment.grace_period_ends_at,
            days_remaining=days_remaining,
            is_expired=is_expired,
            in_grace_period=in_grace,
            can_extend=can_extend,
        )

    # --- mutations -----------------------------------------------------

    async def grant(
        self,
        db: AsyncSession,
        user_id: str,
        product: ProductRef,
        expires_at: Optional[datetime] = None,
        grace_period_days: int = 0,
        payment_intent_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Enrollment:
        """Grant access, returning the existing active enrollment if any."""
        now = self.clock()
        existing = await self.find_active(db, user_id, product)
        if existing is not None:
            if self._within_access(existing, now):
                return existing
            # Past its grace end but the expiry batch has not run yet
            existing.status = EnrollmentStatus.EXPIRED
            await self._cancel_warnings(db, existing.id)
            await db.flush()

        enrollment = Enrollment(
            user_id=str(user_id),
            status=EnrollmentStatus.ACTIVE,
            enrolled_at=now,
            expires_at=expires_at,
            grace_period_ends_at=(
                expires_at + timedelta(days=grace_period_days or 0) if expires_at else None
            ),
            payment_intent_id=payment_intent_id,
            subscription_id=subscription_id,
            meta=dict(metadata or {}),
        )
        _apply_product(enrollment, product)
        db.add(enrollment)
        await db.flush()

        if expires_at is not None:
            await self._schedule_warnings(db, enrollment, now)

        logging.info(
            "Granted %s to user %s (enrollment %s, expires %s)",
            product.key, user_id, enrollment.id, expires_at,
        )
        return enrollment

    async def revoke(self, db: AsyncSession, enrollment_id: int, reason: str) -> None:
        enrollment = await self.get_enrollment(db, enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(f"Enrollment {enrollment_id} not found")
        if enrollment.status == EnrollmentStatus.REVOKED:
            return

        now = self.clock()
        enrollment.status = EnrollmentStatus.REVOKED
        enrollment.revoked_at = now
        enrollment.meta = {
            **(enrollment.meta or {}),
            "revocation_reason": reason,
            "revoked_at": now.isoformat(),
        }
        await self._cancel_warnings(db, enrollment.id)
        await db.flush()
        logging.info("Revoked enrollment %s: %s", enrollment_id, reason)

    async def extend(
        self,
        db: AsyncSession,
        enrollment_id: int,
        extension_days: int,
        payment_intent_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Enrollment:
        enrollment = await self.get_enrollment(db, enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(f"Enrollment {enrollment_id} not found")
        if enrollment.status == EnrollmentStatus.REVOKED:
            raise EnrollmentRevokedError(f"Enrollment {enrollment_id} was revoked and cannot be extended")

        if enrollment.status != EnrollmentStatus.ACTIVE:
            other = await self.find_active(db, enrollment.user_id, ProductRef.of(enrollment))
            if other is not None and other.id != enrollment.id:
                raise AlreadyEnrolledError(
                    f"User {enrollment.user_id} already holds active enrollment {other.id}"
                )

        now = self.clock()
        previous_expiry = enrollment.expires_at
        grace = timedelta(0)
        if enrollment.expires_at and enrollment.grace_period_ends_at:
            grace = enrollment.grace_period_ends_at - enrollment.expires_at

        new_expiry = (previous_expiry or now) + timedelta(days=extension_days)
        enrollment.expires_at = new_expiry
        enrollment.grace_period_ends_at = new_expiry + grace
        enrollment.status = EnrollmentStatus.ACTIVE

        meta = dict(enrollment.meta or {})
        extensions = list(meta.get("extensions", []))
        extensions.append({
            "days": extension_days,
            "payment_intent_id": payment_intent_id,
            "reason": reason,
            "previous_expires_at": previous_expiry.isoformat() if previous_expiry else None,
            "extended_at": now.isoformat(),
        })
        meta["extensions"] = extensions
        enrollment.meta = meta

        await self._cancel_warnings(db, enrollment.id)
        await db.flush()
        await self._schedule_warnings(db, enrollment, now)

        logging.info(
            "Extended enrollment %s by %s days (expires %s)", enrollment_id, extension_days, new_expiry
        )
        return enrollment

    async def process_expired(self, db: AsyncSession) -> int:
        """Move every active enrollment whose access window closed to ``expired``."""
        now = self.clock()
        access_end = func.coalesce(Enrollment.grace_period_ends_at, Enrollment.expires_at)
        lapsed = and_(
            Enrollment.status == EnrollmentStatus.ACTIVE,
            Enrollment.expires_at.isnot(None),
            access_end < now,
        )
        result = await db.execute(select(Enrollment.id).where(lapsed))
        ids = list(result.scalars().all())
        if not ids:
            return 0

        # Rows extended since the select above keep their status
        result = await db.execute(
            update(Enrollment)
            .where(Enrollment.id.in_(ids), lapsed)
            .values(status=EnrollmentStatus.EXPIRED)
            .returning(Enrollment.id)
            .execution_options(synchronize_session="fetch")
        )
        expired = result.scalars().all()
        await db.flush()
        logging.info("Expired %s enrollments", len(expired))
        return len(expired)

    # --- expiration warnings -------------------------------------------

    async def _schedule_warnings(self, db: AsyncSession, enrollment: Enrollment, now: datetime) -> None:
        if enrollment.expires_at is None:
            return
        for days in WARNING_OFFSETS:
            when = enrollment.expires_at - timedelta(days=days)
            if when <= now:
                continue
            db.add(
                ScheduledNotification(
                    enrollment_id=enrollment.id,
                    notification_type=f"{days}_day_warning",
                    scheduled_for=when,
                    status="pending",
                )
            )
        await db.flush()

    async def _cancel_warnings(self, db: AsyncSession, enrollment_id: int) -> None:
        await db.execute(
            update(ScheduledNotification)
            .where(
                ScheduledNotification.enrollment_id == enrollment_id,
                ScheduledNotification.status == "pending",
            )
            .values(status="canceled")
            .execution_options(synchronize_session="fetch")
        )

    async def pending_notifications(self, db: AsyncSession, enrollment_id: int) -> List[ScheduledNotification]:
        result = await db.execute(
            select(ScheduledNotification)
            .filter(
                ScheduledNotification.enrollment_id == enrollment_id,
                ScheduledNotification.status == "pending",
            )
            .order_by(ScheduledNotification.scheduled_for)
        )
        return list(result.scalars().all())

    async def due_notifications(self, db: AsyncSession) -> List[Tuple[ScheduledNotification, Enrollment]]:
        now = self.clock()
        result = await db.execute(
            select(ScheduledNotification, Enrollment)
            .join(Enrollment, Enrollment.id == ScheduledNotification.enrollment_id)
            .filter(
                ScheduledNotification.status == "pending",
                ScheduledNotification.scheduled_for <= now,
                Enrollment.status == EnrollmentStatus.ACTIVE,
            )
            .order_by(ScheduledNotification.scheduled_for)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def mark_notification_sent(self, db: AsyncSession, notification: ScheduledNotification) -> None:
        notification.status = "sent"
        notification.sent_at = self.clock()
        await db.flush()
