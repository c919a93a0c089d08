import asyncio
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import select

sys.path.append(str(Path(__file__).resolve().parents[1]))

from helpers import FakeClock, FakeGateway, RecordingSender, make_event, make_services, setup_db  # noqa: E402

from academy.errors import (  # noqa: E402
    AlreadyEnrolledError,
    AlreadySubscribedError,
    CourseNotFoundError,
    CreationFailedError,
    EnrollmentNotFoundError,
    EnrollmentRevokedError,
    InvalidPurchaseError,
)
from academy.models.course import Course  # noqa: E402
from academy.models.gift import GiftPurchase  # noqa: E402
from academy.models.installment_plan import InstallmentPlan  # noqa: E402
from academy.models.payment import Payment  # noqa: E402
from academy.models.promo_code import PromoCode  # noqa: E402
from academy.models.subscription import Subscription  # noqa: E402
from academy.services.enrollment_service import ProductRef  # noqa: E402


async def prepare(gateway=None, clock=None):
    _, SessionLocal = await setup_db()
    clock = clock or FakeClock()
    sender = RecordingSender()
    services = make_services(SessionLocal, clock=clock, sender=sender, gateway=gateway or FakeGateway())
    async with SessionLocal() as db:
        db.add(Course(id="c1", title="Intro to Mindset", price=9999, access_duration_days=365))
        db.add(Course(id="free", title="Free Preview", price=None))
        db.add(Course(id="draft", title="Unpublished", price=5000, published=False))
        db.add(PromoCode(code="WELCOME10", discount_type="percentage", discount_value=10))
        await db.commit()
    return SessionLocal, services, sender


def test_course_purchase_adds_texas_sales_tax():
    async def scenario():
        SessionLocal, services, _ = await prepare()
        async with SessionLocal() as db:
            result = await services.purchases.purchase_course(db, "u1", "c1", "u1@example.com", state="TX")
            payment = (await db.execute(select(Payment))).scalars().one()
        return result, payment, services.purchases.gateway

    result, payment, gateway = asyncio.run(scenario())
    assert result.subtotal == 9999
    assert result.tax == 825
    assert result.amount == 10824
    assert result.payment_intent_id == "pi_1"
    assert gateway.intents[0]["amount"] == 10824
    assert gateway.intents[0]["metadata"]["type"] == "course_purchase"
    assert gateway.intents[0]["metadata"]["state"] == "TX"
    assert payment.status == "pending"
    assert payment.amount == 10824
    assert payment.meta == gateway.intents[0]["metadata"]


def test_course_purchase_outside_texas_is_untaxed():
    async def scenario():
        SessionLocal, services, _ = await prepare()
        async with SessionLocal() as db:
            return await services.purchases.purchase_course(db, "u1", "c1", "u1@example.com", state="CA")

    result = asyncio.run(scenario())
    assert result.tax == 0
    assert result.amount == 9999


def test_promo_code_reduces_course_price():
    async def scenario():
        SessionLocal, services, _ = await prepare()
        async with SessionLocal() as db:
            discounted = await services.purchases.purchase_course(
                db, "u1", "c1", "u1@example.com", promo_code="welcome10"
            )
            full = await services.purchases.purchase_course(
                db, "u2", "c1", "u2@example.com", promo_code="NOPE"
            )
        return discounted, full, services.purchases.gateway

    discounted, full, gateway = asyncio.run(scenario())
    assert discounted.amount == 9000
    assert gateway.intents[0]["metadata"]["promo_code"] == "WELCOME10"
    assert gateway.intents[0]["metadata"]["original_price"] == "9999"
    # Unknown codes are ignored, not rejected
    assert full.amount == 9999
    assert "promo_code" not in gateway.intents[1]["metadata"]


def test_course_purchase_rejections():
    async def scenario():
        SessionLocal, services, _ = await prepare()
        errors = []
        async with SessionLocal() as db:
            for course_id in ("missing", "draft", "free"):
                try:
                    await services.purchases.purchase_course(db, "u1", course_id, "u1@example.com")
                except (CourseNotFoundError, InvalidPurchaseError) as e:
                    errors.append(e.code)

            await services.ledger.grant(db, "u1", ProductRef.course("c1"))
            await db.commit()
            try:
                await services.purchases.purchase_course(db, "u1", "c1", "u1@example.com")
            except AlreadyEnrolledError as e:
                errors.append(e.code)
        return errors, services.purchases.gateway

    errors, gateway = asyncio.run(scenario())
    assert errors == ["COURSE_NOT_FOUND", "COURSE_NOT_FOUND", "INVALID_PRICE", "ALREADY_ENROLLED"]
    assert gateway.intents == []


def test_gateway_failure_surfaces_creation_error():
    async def scenario():
        SessionLocal, services, _ = await prepare(gateway=FakeGateway(fail=True))
        async with SessionLocal() as db:
            with pytest.raises(CreationFailedError) as exc:
                await services.purchases.purchase_course(db, "u1", "c1", "u1@example.com")
            await db.rollback()
            payments = (await db.execute(select(Payment))).scalars().all()
        return exc.value, payments

    error, payments = asyncio.run(scenario())
    assert error.code == "PAYMENT_CREATION_FAILED"
    assert error.status_code == 502
    assert payments == []


def test_program_in_three_installments():
    async def scenario():
        SessionLocal, services, _ = await prepare()
        async with SessionLocal() as db:
            result = await services.purchases.purchase_program(
                db, "u1", "so_what_mindset", "u1@example.com", installments=3
            )
            plan = (await db.execute(select(InstallmentPlan))).scalars().one()
        return result, plan, services.purchases.gateway

    result, plan, gateway = asyncio.run(scenario())
    assert result.amount == 16634
    assert plan.total_installments == 3
    assert plan.current_installment == 1
    assert plan.total_amount == 49900
    assert plan.payment_intent_id == result.payment_intent_id
    assert plan.meta == {"program": "SO_WHAT_MINDSET"}
    meta = gateway.intents[0]["metadata"]
    assert meta["installment_plan"] == "true"
    assert meta["current_installment"] == "1"
    assert meta["program"] == "SO_WHAT_MINDSET"


def test_program_rejects_unknown_program_and_installment_counts():
    async def scenario():
        SessionLocal, services, _ = await prepare()
        codes = []
        async with SessionLocal() as db:
            for program, installments in (("NOT_A_PROGRAM", None), ("LEAP_AND_LAUNCH", 4)):
                try:
                    await services.purchases.purchase_program(
                        db, "u1", program, "u1@example.com", installments=installments
                    )
                except InvalidPurchaseError as e:
                    codes.append(e.code)
        return codes

    assert asyncio.run(scenario()) == ["INVALID_PROGRAM", "INVALID_INSTALLMENTS"]


def test_membership_starts_subscription_with_configured_price():
    async def scenario():
        SessionLocal, services, _ = await prepare()
        async with SessionLocal() as db:
            result = await services.purchases.purchase_membership(db, "u1", "professional", "u1@example.com")
            db.add(Subscription(user_id="u2", stripe_subscription_id="sub_x", tier="BASIC", status="active"))
            await db.commit()
            with pytest.raises(AlreadySubscribedError):
                await services.purchases.purchase_membership(db, "u2", "PREMIUM", "u2@example.com")
            with pytest.raises(InvalidPurchaseError) as exc:
                await services.purchases.purchase_membership(db, "u3", "GOLD", "u3@example.com")
        return result, services.purchases.gateway, exc.value

    result, gateway, invalid = asyncio.run(scenario())
    assert result.subscription_id == "sub_1"
    assert result.amount == 34900
    assert gateway.subscriptions[0]["price"] == "price_pro"
    assert gateway.subscriptions[0]["metadata"] == {
        "type": "membership",
        "user_id": "u1",
        "membership_tier": "PROFESSIONAL",
        "user_email": "u1@example.com",
    }
    assert len(gateway.subscriptions) == 1
    assert invalid.code == "INVALID_TIER"


def test_membership_records_first_invoice_payment():
    async def scenario():
        SessionLocal, services, _ = await prepare()
        async with SessionLocal() as db:
            result = await services.purchases.purchase_membership(db, "u1", "BASIC", "u1@example.com")
            payment = (await db.execute(select(Payment))).scalars().one()
        return result, payment

    result, payment = asyncio.run(scenario())
    assert result.payment_intent_id == "pi_sub_1"
    assert payment.stripe_payment_intent_id == "pi_sub_1"
    assert payment.status == "pending"
    assert (payment.product_type, payment.product_id, payment.amount) == ("membership", "BASIC", 19900)
    assert payment.meta["type"] == "membership"
    assert payment.meta["subscription_id"] == "sub_1"


def test_membership_gift_is_priced_per_month():
    async def scenario():
        SessionLocal, services, _ = await prepare()
        async with SessionLocal() as db:
            result = await services.purchases.purchase_gift(
                db, "u1", "u1@example.com", "friend@example.com", "Friend",
                membership_tier="basic", membership_months=3,
            )
            gift = (await db.execute(select(GiftPurchase))).scalars().one()
            payment = (await db.execute(select(Payment))).scalars().one()
            with pytest.raises(InvalidPurchaseError) as exc:
                await services.purchases.purchase_gift(db, "u1", "u1@example.com", "friend@example.com")
        return result, gift, payment, exc.value, services.purchases.gateway

    result, gift, payment, missing, gateway = asyncio.run(scenario())
    assert result.amount == 59700
    # Payment carries the gifted product; the gift marker lives in metadata
    assert (payment.product_type, payment.product_id) == ("membership", "BASIC")
    assert payment.meta["type"] == "gift_purchase"
    assert gift.status == "pending"
    assert gift.payment_intent_id == result.payment_intent_id
    assert gateway.intents[0]["metadata"]["gift_id"] == str(gift.id)
    assert gateway.intents[0]["metadata"]["membership_months"] == "3"
    assert missing.code == "MISSING_GIFT_ITEM"


def test_extension_pricing_and_checks():
    async def scenario():
        SessionLocal, services, _ = await prepare()
        async with SessionLocal() as db:
            enrollment = await services.ledger.grant(
                db, "u1", ProductRef.course("c1"), expires_at=FakeClock().now + timedelta(days=10)
            )
            revoked = await services.ledger.grant(db, "u1", ProductRef.course("other"))
            await services.ledger.revoke(db, revoked.id, "Chargeback")
            await db.commit()

            result = await services.purchases.purchase_extension(db, "u1", enrollment.id, 30, "u1@example.com")
            with pytest.raises(InvalidPurchaseError) as too_short:
                await services.purchases.purchase_extension(db, "u1", enrollment.id, 6, "u1@example.com")
            with pytest.raises(EnrollmentRevokedError):
                await services.purchases.purchase_extension(db, "u1", revoked.id, 30, "u1@example.com")
            with pytest.raises(EnrollmentNotFoundError):
                await services.purchases.purchase_extension(db, "someone-else", enrollment.id, 30, "x@example.com")
        return result, too_short.value, services.purchases.gateway, enrollment.id

    result, too_short, gateway, enrollment_id = asyncio.run(scenario())
    assert result.amount == 3000
    assert too_short.code == "INVALID_EXTENSION"
    assert gateway.intents[0]["metadata"]["enrollment_id"] == str(enrollment_id)
    assert gateway.intents[0]["metadata"]["extension_days"] == "30"
    assert len(gateway.intents) == 1


def test_extension_refused_while_a_newer_enrollment_is_active():
    async def scenario():
        clock = FakeClock()
        SessionLocal, services, _ = await prepare(clock=clock)
        async with SessionLocal() as db:
            old = await services.ledger.grant(db, "u1", ProductRef.course("c1"), expires_at=clock.now + timedelta(days=30))
            await db.commit()
        clock.advance(days=40)
        async with SessionLocal() as db:
            await services.ledger.process_expired(db)
            await services.ledger.grant(db, "u1", ProductRef.course("c1"), expires_at=clock.now + timedelta(days=365))
            await db.commit()
            with pytest.raises(AlreadyEnrolledError) as exc:
                await services.purchases.purchase_extension(db, "u1", old.id, 30, "u1@example.com")
        return exc.value, services.purchases.gateway

    error, gateway = asyncio.run(scenario())
    assert error.code == "ALREADY_ENROLLED"
    assert gateway.intents == []


def test_course_purchase_grants_access_once_paid():
    async def scenario():
        SessionLocal, services, sender = await prepare()
        async with SessionLocal() as db:
            result = await services.purchases.purchase_course(db, "u1", "c1", "u1@example.com")
            before = await services.ledger.has_access(db, "u1", ProductRef.course("c1"))

        await services.webhooks.process(
            make_event("payment_intent.succeeded", {"id": result.payment_intent_id, "latest_charge": "ch_1"})
        )
        await services.notifier.drain()

        async with SessionLocal() as db:
            after = await services.ledger.has_access(db, "u1", ProductRef.course("c1"))
            status = await services.ledger.get_enrollment_status(db, "u1", ProductRef.course("c1"))
        return before, after, status, sender

    before, after, status, sender = asyncio.run(scenario())
    assert before is False
    assert after is True
    assert status.days_remaining == 365
    assert sender.names() == ["enrollmentConfirmation"]
    assert sender.sent[0][1]["email"] == "u1@example.com"


def test_pricing_lists_catalog():
    async def scenario():
        _, services, _ = await prepare()
        return services.purchases.get_pricing()

    catalog = asyncio.run(scenario())
    assert catalog["memberships"]["PREMIUM"]["price"] == 69900
    assert catalog["programs"]["SO_WHAT_MINDSET"]["installments"] == {"2": 24950, "3": 16634}
    assert catalog["extension"]["price_per_day"] == 100
    assert catalog["currency"] == "usd"
