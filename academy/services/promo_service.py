"""Promotional code validation.

``evaluate_promo`` is pure; ``validate_promo_code`` adds the lookup and never
raises, so checkout can always show a reason to the user.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from academy.models.promo_code import PromoCode

PERCENTAGE = "percentage"
FIXED = "fixed"


@dataclass(frozen=True)
class PromoValidation:
    valid: bool
    discount_amount: int = 0
    discount_percent: Optional[int] = None
    code: Optional[str] = None
    reason: Optional[str] = None

    def final_price(self, amount: int) -> int:
        return max(0, amount - self.discount_amount)


def _invalid(reason: str) -> PromoValidation:
    return PromoValidation(valid=False, reason=reason)


def evaluate_promo(promo: Optional[PromoCode], purchase_amount: int, purchase_type: str, now: datetime) -> PromoValidation:
    if promo is None or not promo.active:
        return _invalid("Invalid promotional code")

    if promo.expires_at is not None and promo.expires_at < now:
        return _invalid("Promotional code has expired")

    if promo.max_uses is not None and (promo.times_used or 0) >= promo.max_uses:
        return _invalid("Promotional code has reached its usage limit")

    if promo.applicable_to and purchase_type not in promo.applicable_to:
        return _invalid(f"Promotional code not valid for {purchase_type} purchases")

    minimum = promo.minimum_purchase_amount
    if minimum is not None and purchase_amount < minimum:
        return _invalid(f"Minimum purchase amount of ${minimum / 100:.2f} required")

    if promo.discount_type == PERCENTAGE:
        percent = max(0, min(100, promo.discount_value))
        # Integer arithmetic floors to the minor unit
        discount = purchase_amount * percent // 100
        return PromoValidation(
            valid=True,
            discount_amount=discount,
            discount_percent=percent,
            code=promo.code,
        )

    discount = max(0, min(promo.discount_value, purchase_amount))
    return PromoValidation(valid=True, discount_amount=discount, code=promo.code)


async def get_promo_code(db: AsyncSession, code: str) -> Optional[PromoCode]:
    result = await db.execute(
        select(PromoCode).filter(func.upper(PromoCode.code) == code.strip().upper())
    )
    return result.scalars().first()


async def validate_promo_code(
    db: AsyncSession, code: str, purchase_amount: int, purchase_type: str, now: Optional[datetime] = None
) -> PromoValidation:
    if not code or not code.strip():
        return _invalid("Invalid promotional code")
    try:
        promo = await get_promo_code(db, code)
    except Exception:
        logging.exception("Promo code lookup failed for %s", code)
        return _invalid("Error validating promotional code")
    return evaluate_promo(promo, purchase_amount, purchase_type, now or datetime.utcnow())
