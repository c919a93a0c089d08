"""Typed purchase contexts carried through the processor's metadata bag.

The purchase orchestrator serializes one of these variants into the payment
intent (or subscription) metadata; the webhook processor parses it back from
the copy it stored itself. Handler code only ever sees the typed variants.
Metadata values are strings on the processor side, so every field is
stringified on the way out and converted on the way back in.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Union

COURSE_PURCHASE = "course_purchase"
PROGRAM_PURCHASE = "program_purchase"
ENROLLMENT_EXTENSION = "enrollment_extension"
GIFT_PURCHASE = "gift_purchase"
MEMBERSHIP = "membership"


class InvalidPurchaseContext(ValueError):
    pass


@dataclass(frozen=True)
class InstallmentInfo:
    total_installments: int
    current_installment: int
    installment_amount: int
    total_amount: int


@dataclass(frozen=True)
class CoursePurchaseContext:
    user_id: str
    course_id: str
    course_title: str = ""
    duration_days: Optional[int] = None
    promo_code: Optional[str] = None
    user_email: Optional[str] = None

    purchase_type = COURSE_PURCHASE


@dataclass(frozen=True)
class ProgramPurchaseContext:
    user_id: str
    program_type: str
    program_name: str = ""
    duration_days: int = 365
    promo_code: Optional[str] = None
    installment: Optional[InstallmentInfo] = None
    user_email: Optional[str] = None

    purchase_type = PROGRAM_PURCHASE


@dataclass(frozen=True)
class ExtensionContext:
    user_id: str
    enrollment_id: int
    extension_days: int = 30
    course_id: Optional[str] = None
    user_email: Optional[str] = None

    purchase_type = ENROLLMENT_EXTENSION


@dataclass(frozen=True)
class GiftContext:
    user_id: str
    gift_id: int
    gift_type: str
    recipient_email: str
    recipient_name: str = ""
    product_id: Optional[str] = None
    membership_months: Optional[int] = None

    purchase_type = GIFT_PURCHASE


@dataclass(frozen=True)
class MembershipContext:
    user_id: str
    tier: str
    promo_code: Optional[str] = None
    user_email: Optional[str] = None

    purchase_type = MEMBERSHIP


PurchaseContext = Union[
    CoursePurchaseContext,
    ProgramPurchaseContext,
    ExtensionContext,
    GiftContext,
    MembershipContext,
]


def _put(meta: Dict[str, str], key: str, value) -> None:
    if value is not None and value != "":
        meta[key] = str(value)


def to_metadata(context: PurchaseContext) -> Dict[str, str]:
    """Flatten ``context`` into a string-valued metadata dict."""
    meta = {"type": context.purchase_type, "user_id": str(context.user_id)}

    if isinstance(context, CoursePurchaseContext):
        _put(meta, "course_id", context.course_id)
        _put(meta, "course_title", context.course_title)
        _put(meta, "duration_days", context.duration_days)
        _put(meta, "promo_code", context.promo_code)
        _put(meta, "user_email", context.user_email)
    elif isinstance(context, ProgramPurchaseContext):
        _put(meta, "program", context.program_type)
        _put(meta, "program_name", context.program_name)
        _put(meta, "duration_days", context.duration_days)
        _put(meta, "promo_code", context.promo_code)
        _put(meta, "user_email", context.user_email)
        if context.installment:
            meta["installment_plan"] = "true"
            meta["total_installments"] = str(context.installment.total_installments)
            meta["current_installment"] = str(context.installment.current_installment)
            meta["installment_amount"] = str(context.installment.installment_amount)
            meta["total_amount"] = str(context.installment.total_amount)
    elif isinstance(context, ExtensionContext):
        _put(meta, "enrollment_id", context.enrollment_id)
        _put(meta, "extension_days", context.extension_days)
        _put(meta, "course_id", context.course_id)
        _put(meta, "user_email", context.user_email)
    elif isinstance(context, GiftContext):
        _put(meta, "gift_id", context.gift_id)
        _put(meta, "gift_type", context.gift_type)
        _put(meta, "recipient_email", context.recipient_email)
        _put(meta, "recipient_name", context.recipient_name)
        _put(meta, "product_id", context.product_id)
        _put(meta, "membership_months", context.membership_months)
    elif isinstance(context, MembershipContext):
        _put(meta, "membership_tier", context.tier)
        _put(meta, "promo_code", context.promo_code)
        _put(meta, "user_email", context.user_email)
    else:
        raise TypeError(f"Unsupported purchase context: {type(context).__name__}")

    return meta


def _required(meta, key: str) -> str:
    value = meta.get(key)
    if not value:
        raise InvalidPurchaseContext(f"metadata is missing '{key}'")
    return str(value)


def _int(meta, key: str, default=None) -> Optional[int]:
    value = meta.get(key)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidPurchaseContext(f"metadata '{key}' is not an integer: {value!r}")


def from_metadata(meta: Optional[Dict[str, str]]) -> Optional[PurchaseContext]:
    """Rebuild a typed context from metadata.

    Returns ``None`` when the bag carries no purchase type this service knows
    about. Raises :class:`InvalidPurchaseContext` when a known type is missing
    the fields it needs.
    """
    if not meta:
        return None

    purchase_type = meta.get("type")

    if purchase_type == COURSE_PURCHASE:
        return CoursePurchaseContext(
            user_id=_required(meta, "user_id"),
            course_id=_required(meta, "course_id"),
            course_title=meta.get("course_title", ""),
            duration_days=_int(meta, "duration_days"),
            promo_code=meta.get("promo_code") or None,
            user_email=meta.get("user_email") or None,
        )

    if purchase_type == PROGRAM_PURCHASE:
        installment = None
        if meta.get("installment_plan") == "true":
            installment = InstallmentInfo(
                total_installments=_int(meta, "total_installments", 1),
                current_installment=_int(meta, "current_installment", 1),
                installment_amount=_int(meta, "installment_amount", 0),
                total_amount=_int(meta, "total_amount", 0),
            )
        return ProgramPurchaseContext(
            user_id=_required(meta, "user_id"),
            program_type=_required(meta, "program"),
            program_name=meta.get("program_name", ""),
            duration_days=_int(meta, "duration_days", 365),
            promo_code=meta.get("promo_code") or None,
            installment=installment,
            user_email=meta.get("user_email") or None,
        )

    if purchase_type == ENROLLMENT_EXTENSION:
        _required(meta, "enrollment_id")
        return ExtensionContext(
            user_id=_required(meta, "user_id"),
            enrollment_id=_int(meta, "enrollment_id"),
            extension_days=_int(meta, "extension_days", 30),
            course_id=meta.get("course_id") or None,
            user_email=meta.get("user_email") or None,
        )

    if purchase_type == GIFT_PURCHASE:
        return GiftContext(
            user_id=_required(meta, "user_id"),
            gift_id=int(_required(meta, "gift_id")),
            gift_type=_required(meta, "gift_type"),
            recipient_email=_required(meta, "recipient_email"),
            recipient_name=meta.get("recipient_name", ""),
            product_id=meta.get("product_id") or None,
            membership_months=_int(meta, "membership_months"),
        )

    if purchase_type == MEMBERSHIP:
        return MembershipContext(
            user_id=_required(meta, "user_id"),
            tier=_required(meta, "membership_tier"),
            promo_code=meta.get("promo_code") or None,
            user_email=meta.get("user_email") or None,
        )

    return None
