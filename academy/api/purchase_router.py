from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from academy.dependencies import Services, get_db, get_services
from academy.services.promo_service import validate_promo_code

router = APIRouter()


# User identity arrives already authenticated from the frontend session
class CoursePurchaseRequest(BaseModel):
    user_id: str
    email: str
    course_id: str
    promo_code: Optional[str] = None
    state: Optional[str] = None


class MembershipPurchaseRequest(BaseModel):
    user_id: str
    email: str
    tier: str
    promo_code: Optional[str] = None
    trial_days: Optional[int] = None


class ProgramPurchaseRequest(BaseModel):
    user_id: str
    email: str
    program: str
    promo_code: Optional[str] = None
    installments: Optional[int] = None
    state: Optional[str] = None


class GiftPurchaseRequest(BaseModel):
    user_id: str
    email: str
    recipient_email: str
    recipient_name: str = ""
    course_id: Optional[str] = None
    program: Optional[str] = None
    membership_tier: Optional[str] = None
    membership_months: Optional[int] = None
    personal_message: Optional[str] = None
    delivery_date: Optional[datetime] = None
    state: Optional[str] = None


class ExtensionRequest(BaseModel):
    user_id: str
    email: str
    enrollment_id: int
    extension_days: int
    state: Optional[str] = None


class PromoRequest(BaseModel):
    code: str
    amount: int
    purchase_type: str


@router.post("/course")
async def purchase_course(
    body: CoursePurchaseRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    result = await services.purchases.purchase_course(
        db, body.user_id, body.course_id, body.email, promo_code=body.promo_code, state=body.state
    )
    return asdict(result)


@router.post("/membership")
async def purchase_membership(
    body: MembershipPurchaseRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    result = await services.purchases.purchase_membership(
        db, body.user_id, body.tier, body.email, promo_code=body.promo_code, trial_days=body.trial_days
    )
    return asdict(result)


@router.post("/program")
async def purchase_program(
    body: ProgramPurchaseRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    result = await services.purchases.purchase_program(
        db,
        body.user_id,
        body.program,
        body.email,
        promo_code=body.promo_code,
        installments=body.installments,
        state=body.state,
    )
    return asdict(result)


@router.post("/gift")
async def purchase_gift(
    body: GiftPurchaseRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    delivery_date = body.delivery_date
    if delivery_date is not None and delivery_date.tzinfo is not None:
        delivery_date = delivery_date.replace(tzinfo=None) - delivery_date.utcoffset()
    result = await services.purchases.purchase_gift(
        db,
        body.user_id,
        body.email,
        body.recipient_email,
        recipient_name=body.recipient_name,
        course_id=body.course_id,
        program=body.program,
        membership_tier=body.membership_tier,
        membership_months=body.membership_months,
        personal_message=body.personal_message,
        delivery_date=delivery_date,
        state=body.state,
    )
    return asdict(result)


@router.post("/extend")
async def purchase_extension(
    body: ExtensionRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    result = await services.purchases.purchase_extension(
        db, body.user_id, body.enrollment_id, body.extension_days, body.email, state=body.state
    )
    return asdict(result)


@router.post("/validate-promo")
async def validate_promo(body: PromoRequest, db: AsyncSession = Depends(get_db)):
    validation = await validate_promo_code(db, body.code, body.amount, body.purchase_type)
    data = asdict(validation)
    data["final_price"] = validation.final_price(body.amount)
    return data


@router.get("/pricing")
async def pricing(services: Services = Depends(get_services)):
    return services.purchases.get_pricing()
