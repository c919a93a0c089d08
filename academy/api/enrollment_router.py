from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from academy.dependencies import Services, get_db, get_services
from academy.services.enrollment_service import ProductRef

router = APIRouter()


def _product(course_id: Optional[str], program: Optional[str], tier: Optional[str]) -> ProductRef:
    given = [p for p in (course_id, program, tier) if p]
    if len(given) != 1:
        raise HTTPException(status_code=400, detail="Pass exactly one of course_id, program, tier")
    if course_id:
        return ProductRef.course(course_id)
    if program:
        return ProductRef.program(program.upper())
    return ProductRef.membership(tier.upper())


@router.get("/access")
async def check_access(
    user_id: str,
    course_id: Optional[str] = None,
    program: Optional[str] = None,
    tier: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    product = _product(course_id, program, tier)
    has_access = await services.ledger.has_access(db, user_id, product)
    return {"user_id": user_id, "product": product.key, "has_access": has_access}


@router.get("/status")
async def enrollment_status(
    user_id: str,
    course_id: Optional[str] = None,
    program: Optional[str] = None,
    tier: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    product = _product(course_id, program, tier)
    status = await services.ledger.get_enrollment_status(db, user_id, product)
    return {"product": product.key, **asdict(status)}


@router.get("/active")
async def active_enrollments(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    enrollments = await services.ledger.get_active_enrollments(db, user_id)
    return [
        {
            "id": e.id,
            "product": e.product_key,
            "enrolled_at": e.enrolled_at,
            "expires_at": e.expires_at,
            "grace_period_ends_at": e.grace_period_ends_at,
        }
        for e in enrollments
    ]
