"""Purchase orchestration: price, check ownership, open a payment at Stripe.

Nothing here grants access. A purchase only creates the processor-side
payment (or subscription) plus a pending local record; the webhook processor
grants access once the processor reports the money moved.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from academy.errors import (
    AlreadyEnrolledError,
    AlreadySubscribedError,
    CourseNotFoundError,
    CreationFailedError,
    EnrollmentNotFoundError,
    EnrollmentRevokedError,
    GatewayError,
    InvalidPurchaseError,
)
from academy.models.course import Course
from academy.models.customer import CustomerProfile
from academy.models.enrollment import EnrollmentStatus
from academy.models.gift import GiftPurchase
from academy.models.installment_plan import InstallmentPlan
from academy.models.payment import Payment, PaymentStatus
from academy.models.subscription import LIVE_STATUSES, Subscription
from academy.services import pricing
from academy.services.enrollment_service import EnrollmentLedger, ProductRef
from academy.services.promo_service import validate_promo_code
from academy.services.purchase_context import (
    CoursePurchaseContext,
    ExtensionContext,
    GiftContext,
    InstallmentInfo,
    MembershipContext,
    ProgramPurchaseContext,
    to_metadata,
)


@dataclass
class PurchaseResult:
    client_secret: Optional[str]
    amount: int
    currency: str
    payment_intent_id: Optional[str] = None
    subscription_id: Optional[str] = None
    subtotal: Optional[int] = None
    tax: int = 0


class PurchaseService:
    def __init__(
        self,
        gateway,
        ledger: EnrollmentLedger,
        currency: str = "usd",
        membership_price_ids: Dict[str, Optional[str]] = None,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.currency = currency
        self.membership_price_ids = membership_price_ids or {}

    # --- helpers -------------------------------------------------------

    async def get_or_create_customer(
        self, db: AsyncSession, user_id: str, email: str, name: str = None
    ) -> str:
        result = await db.execute(
            select(CustomerProfile)
            .filter(CustomerProfile.user_id == str(user_id))
            .order_by(CustomerProfile.id)
        )
        profile = result.scalars().first()
        if profile:
            return profile.stripe_customer_id

        customer_id = await self.gateway.create_customer(
            email=email, name=name, metadata={"user_id": str(user_id)}
        )
        db.add(
            CustomerProfile(
                user_id=str(user_id),
                stripe_customer_id=customer_id,
                email=email,
                name=name,
            )
        )
        await db.flush()
        logging.info("Created Stripe customer %s for user %s", customer_id, user_id)
        return customer_id

    async def _apply_promo(self, db, promo_code, amount, purchase_type):
        """Return (final_amount, accepted_code). Invalid codes charge full price."""
        if not promo_code:
            return amount, None
        validation = await validate_promo_code(db, promo_code, amount, purchase_type)
        if not validation.valid:
            logging.info("Ignoring promo code %s: %s", promo_code, validation.reason)
            return amount, None
        return validation.final_price(amount), validation.code

    async def _create_payment(
        self,
        db: AsyncSession,
        *,
        context,
        user_email: str,
        amount: int,
        product_type: str,
        product_id: str,
        product_name: str,
        description: str,
        state: str = None,
        failure_code: str = "PAYMENT_CREATION_FAILED",
        extra_metadata: Dict[str, str] = None,
    ) -> PurchaseResult:
        user_id = str(context.user_id)
        tax = pricing.calculate_sales_tax(amount, state)
        total = amount + tax

        metadata = to_metadata(context)
        metadata.update({k: str(v) for k, v in (extra_metadata or {}).items()})
        metadata["subtotal"] = str(amount)
        metadata["tax"] = str(tax)
        if state:
            metadata["state"] = state

        try:
            customer_id = await self.get_or_create_customer(db, user_id, user_email)
            intent = await self.gateway.create_payment_intent(
                amount=total,
                currency=self.currency,
                customer_ref=customer_id,
                metadata=metadata,
                description=description,
            )
        except GatewayError as e:
            raise CreationFailedError(f"Could not create payment: {e.message}", code=failure_code)

        db.add(
            Payment(
                user_id=user_id,
                stripe_payment_intent_id=intent.id,
                stripe_customer_id=customer_id,
                amount=total,
                currency=self.currency,
                status=PaymentStatus.PENDING,
                product_type=product_type,
                product_id=str(product_id),
                product_name=product_name,
                description=description,
                meta=metadata,
            )
        )
        await db.flush()

        logging.info(
            "Payment intent %s created for user %s: %s %s (%s, tax %s)",
            intent.id, user_id, product_type, product_id, total, tax,
        )
        return PurchaseResult(
            client_secret=intent.client_secret,
            payment_intent_id=intent.id,
            amount=total,
            currency=self.currency,
            subtotal=amount,
            tax=tax,
        )

    # --- purchases -----------------------------------------------------

    async def purchase_course(
        self,
        db: AsyncSession,
        user_id: str,
        course_id: str,
        user_email: str,
        promo_code: str = None,
        state: str = None,
    ) -> PurchaseResult:
        result = await db.execute(select(Course).filter(Course.id == str(course_id)))
        course = result.scalars().first()
        if course is None or not course.published:
            raise CourseNotFoundError(f"Course {course_id} not found")
        if not course.price:
            raise InvalidPurchaseError(f"Course {course_id} has no price", code="INVALID_PRICE")

        if await self.ledger.has_access(db, user_id, ProductRef.course(course_id)):
            raise AlreadyEnrolledError("User is already enrolled in this course")

        amount, accepted_code = await self._apply_promo(db, promo_code, course.price, "course")
        context = CoursePurchaseContext(
            user_id=str(user_id),
            course_id=course.id,
            course_title=course.title,
            duration_days=course.access_duration_days,
            promo_code=accepted_code,
            user_email=user_email,
        )
        purchase = await self._create_payment(
            db,
            context=context,
            user_email=user_email,
            amount=amount,
            product_type="course",
            product_id=course.id,
            product_name=course.title,
            description=f"Course: {course.title}",
            state=state,
            extra_metadata={"original_price": course.price},
        )
        await db.commit()
        return purchase

    async def purchase_membership(
        self,
        db: AsyncSession,
        user_id: str,
        tier: str,
        user_email: str,
        promo_code: str = None,
        trial_days: int = None,
    ) -> PurchaseResult:
        tier = (tier or "").upper()
        config = pricing.MEMBERSHIPS.get(tier)
        if config is None:
            raise InvalidPurchaseError(f"Invalid membership tier: {tier}", code="INVALID_TIER")
        price_id = self.membership_price_ids.get(tier)
        if not price_id:
            raise InvalidPurchaseError(f"No Stripe price configured for {tier}", code="INVALID_PRICE")

        result = await db.execute(
            select(Subscription).filter(
                Subscription.user_id == str(user_id),
                Subscription.status.in_(LIVE_STATUSES),
            )
        )
        if result.scalars().first() is not None:
            raise AlreadySubscribedError("User already has an active membership")

        # The Stripe price sets the charge; an accepted code is only recorded
        _, accepted_code = await self._apply_promo(db, promo_code, config["price"], "membership")
        metadata = to_metadata(
            MembershipContext(
                user_id=str(user_id), tier=tier, promo_code=accepted_code, user_email=user_email
            )
        )

        try:
            customer_id = await self.get_or_create_customer(db, user_id, user_email)
            subscription = await self.gateway.create_subscription(
                customer_ref=customer_id,
                price_ref=price_id,
                metadata=metadata,
                trial_days=trial_days,
            )
        except GatewayError as e:
            raise CreationFailedError(
                f"Could not create subscription: {e.message}", code="SUBSCRIPTION_CREATION_FAILED"
            )
        if subscription.payment_intent_id:
            db.add(
                Payment(
                    user_id=str(user_id),
                    stripe_payment_intent_id=subscription.payment_intent_id,
                    stripe_customer_id=customer_id,
                    amount=config["price"],
                    currency=self.currency,
                    status=PaymentStatus.PENDING,
                    product_type="membership",
                    product_id=tier,
                    product_name=config["name"],
                    description=f"Membership: {config['name']}",
                    meta={**metadata, "subscription_id": subscription.id},
                )
            )
        await db.commit()

        logging.info("Membership %s subscription %s started for user %s", tier, subscription.id, user_id)
        return PurchaseResult(
            client_secret=subscription.client_secret,
            subscription_id=subscription.id,
            payment_intent_id=subscription.payment_intent_id,
            amount=config["price"],
            currency=self.currency,
            subtotal=config["price"],
        )

    async def purchase_program(
        self,
        db: AsyncSession,
        user_id: str,
        program: str,
        user_email: str,
        promo_code: str = None,
        installments: int = None,
        state: str = None,
    ) -> PurchaseResult:
        program = (program or "").upper()
        config = pricing.PROGRAMS.get(program)
        if config is None:
            raise InvalidPurchaseError(f"Invalid program: {program}", code="INVALID_PROGRAM")
        if installments not in (None, 1) and installments not in pricing.INSTALLMENT_OPTIONS:
            raise InvalidPurchaseError(
                "Installments must be 2 or 3", code="INVALID_INSTALLMENTS"
            )

        if await self.ledger.has_access(db, user_id, ProductRef.program(program)):
            raise AlreadyEnrolledError("User is already enrolled in this program")

        amount, accepted_code = await self._apply_promo(db, promo_code, config["price"], "program")

        if installments in pricing.INSTALLMENT_OPTIONS:
            per_installment = pricing.installment_amount(amount, installments)
            context = ProgramPurchaseContext(
                user_id=str(user_id),
                program_type=program,
                program_name=config["name"],
                duration_days=config["duration_days"],
                promo_code=accepted_code,
                installment=InstallmentInfo(
                    total_installments=installments,
                    current_installment=1,
                    installment_amount=per_installment,
                    total_amount=amount,
                ),
                user_email=user_email,
            )
            purchase = await self._create_payment(
                db,
                context=context,
                user_email=user_email,
                amount=per_installment,
                product_type="program",
                product_id=program,
                product_name=config["name"],
                description=f"{config['name']} (1/{installments})",
                state=state,
                failure_code="INSTALLMENT_CREATION_FAILED",
            )
            db.add(
                InstallmentPlan(
                    user_id=str(user_id),
                    payment_intent_id=purchase.payment_intent_id,
                    total_amount=amount,
                    installment_amount=per_installment,
                    total_installments=installments,
                    current_installment=1,
                    status="active",
                    meta={"program": program},
                )
            )
            await db.commit()
            logging.info(
                "Installment plan for %s: %s x %s (total %s)", program, installments, per_installment, amount
            )
            return purchase

        context = ProgramPurchaseContext(
            user_id=str(user_id),
            program_type=program,
            program_name=config["name"],
            duration_days=config["duration_days"],
            promo_code=accepted_code,
            user_email=user_email,
        )
        purchase = await self._create_payment(
            db,
            context=context,
            user_email=user_email,
            amount=amount,
            product_type="program",
            product_id=program,
            product_name=config["name"],
            description=config["name"],
            state=state,
            extra_metadata={"original_price": config["price"]},
        )
        await db.commit()
        return purchase

    async def purchase_gift(
        self,
        db: AsyncSession,
        purchaser_user_id: str,
        purchaser_email: str,
        recipient_email: str,
        recipient_name: str = "",
        course_id: str = None,
        program: str = None,
        membership_tier: str = None,
        membership_months: int = None,
        personal_message: str = None,
        delivery_date: datetime = None,
        state: str = None,
    ) -> PurchaseResult:
        months = None
        if course_id:
            result = await db.execute(select(Course).filter(Course.id == str(course_id)))
            course = result.scalars().first()
            if course is None or not course.price:
                raise InvalidPurchaseError("Invalid course for gift", code="INVALID_GIFT_COURSE")
            gift_type, product_id = "course", course.id
            amount, description = course.price, f"Gift: {course.title}"
        elif program:
            program = program.upper()
            config = pricing.PROGRAMS.get(program)
            if config is None:
                raise InvalidPurchaseError("Invalid program for gift", code="INVALID_GIFT_PROGRAM")
            gift_type, product_id = "program", program
            amount, description = config["price"], f"Gift: {config['name']}"
        elif membership_tier:
            membership_tier = membership_tier.upper()
            config = pricing.MEMBERSHIPS.get(membership_tier)
            if config is None:
                raise InvalidPurchaseError("Invalid membership for gift", code="INVALID_GIFT_MEMBERSHIP")
            months = max(1, int(membership_months or 1))
            gift_type, product_id = "membership", membership_tier
            amount = config["price"] * months
            description = f"Gift: {config['name']} ({months} months)"
        else:
            raise InvalidPurchaseError("No gift item specified", code="MISSING_GIFT_ITEM")

        gift = GiftPurchase(
            purchaser_user_id=str(purchaser_user_id),
            recipient_email=recipient_email,
            recipient_name=recipient_name,
            gift_type=gift_type,
            amount=amount,
            personal_message=personal_message,
            delivery_date=delivery_date or datetime.utcnow(),
            status="pending",
            meta={"product_id": product_id, "membership_months": months},
        )
        db.add(gift)
        await db.flush()

        context = GiftContext(
            user_id=str(purchaser_user_id),
            gift_id=gift.id,
            gift_type=gift_type,
            recipient_email=recipient_email,
            recipient_name=recipient_name,
            product_id=product_id,
            membership_months=months,
        )
        purchase = await self._create_payment(
            db,
            context=context,
            user_email=purchaser_email,
            amount=amount,
            product_type=gift_type,
            product_id=product_id,
            product_name=description,
            description=description,
            state=state,
        )
        gift.payment_intent_id = purchase.payment_intent_id
        await db.commit()
        logging.info("Gift %s (%s) purchased for %s", gift.id, gift_type, recipient_email)
        return purchase

    async def purchase_extension(
        self,
        db: AsyncSession,
        user_id: str,
        enrollment_id: int,
        extension_days: int,
        user_email: str,
        state: str = None,
    ) -> PurchaseResult:
        if (
            not isinstance(extension_days, int)
            or extension_days < pricing.EXTENSION_MIN_DAYS
            or extension_days > pricing.EXTENSION_MAX_DAYS
        ):
            raise InvalidPurchaseError(
                f"Extension must be between {pricing.EXTENSION_MIN_DAYS} "
                f"and {pricing.EXTENSION_MAX_DAYS} days",
                code="INVALID_EXTENSION",
            )

        enrollment = await self.ledger.get_enrollment(db, enrollment_id)
        if enrollment is None or enrollment.user_id != str(user_id):
            raise EnrollmentNotFoundError(f"Enrollment {enrollment_id} not found")
        if enrollment.status == EnrollmentStatus.REVOKED:
            raise EnrollmentRevokedError("Revoked enrollments cannot be extended")
        if enrollment.status != EnrollmentStatus.ACTIVE:
            current = await self.ledger.find_active(db, user_id, ProductRef.of(enrollment))
            if current is not None:
                raise AlreadyEnrolledError(
                    f"Enrollment {current.id} already gives access to this product; extend that one"
                )

        amount = extension_days * pricing.EXTENSION_PRICE_PER_DAY
        context = ExtensionContext(
            user_id=str(user_id),
            enrollment_id=enrollment.id,
            extension_days=extension_days,
            course_id=enrollment.course_id,
            user_email=user_email,
        )
        purchase = await self._create_payment(
            db,
            context=context,
            user_email=user_email,
            amount=amount,
            product_type="extension",
            product_id=str(enrollment.id),
            product_name=f"{extension_days}-day extension",
            description=f"Access extension: {extension_days} days",
            state=state,
        )
        await db.commit()
        return purchase

    def get_pricing(self) -> dict:
        return {
            "memberships": {
                tier: {"name": c["name"], "price": c["price"], "features": c["features"]}
                for tier, c in pricing.MEMBERSHIPS.items()
            },
            "programs": {
                name: {
                    "name": c["name"],
                    "price": c["price"],
                    "duration_days": c["duration_days"],
                    "features": c["features"],
                    "installments": {
                        str(n): pricing.installment_amount(c["price"], n)
                        for n in pricing.INSTALLMENT_OPTIONS
                    },
                }
                for name, c in pricing.PROGRAMS.items()
            },
            "extension": {
                "price_per_day": pricing.EXTENSION_PRICE_PER_DAY,
                "min_days": pricing.EXTENSION_MIN_DAYS,
                "max_days": pricing.EXTENSION_MAX_DAYS,
            },
            "currency": self.currency,
        }
