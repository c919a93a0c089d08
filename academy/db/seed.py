"""Populate the database with a demo catalog and promo codes."""

import asyncio
from datetime import datetime, timedelta

from sqlalchemy import delete

import academy.db.base  # noqa: F401
from academy.db.base_class import Base
from academy.db.session import DATABASE_URL, SessionLocal, engine
from academy.models.course import Course
from academy.models.promo_code import PromoCode

COURSES = [
    Course(id="intro-to-mindset", title="Intro to Mindset", price=9999, access_duration_days=365),
    Course(id="public-speaking", title="Public Speaking Essentials", price=14900, access_duration_days=180),
    Course(id="free-preview", title="Free Preview", price=0, access_duration_days=None),
]

PROMO_CODES = [
    PromoCode(code="welcome10", discount_type="percentage", discount_value=10),
    PromoCode(
        code="program50",
        discount_type="fixed",
        discount_value=5000,
        applicable_to=["program"],
        minimum_purchase_amount=20000,
        max_uses=100,
        expires_at=datetime.utcnow() + timedelta(days=90),
    ),
]

print(f"Using database: {DATABASE_URL}")


async def main() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with SessionLocal() as session:
        print("Clearing catalog tables...")
        await session.execute(delete(PromoCode))
        await session.execute(delete(Course))

        print("Adding courses and promo codes...")
        session.add_all(COURSES + PROMO_CODES)
        await session.commit()

    print("Done.")


if __name__ == "__main__":
    asyncio.run(main())
