"""Stripe webhook processing: verify, deduplicate, dispatch.

Every event id gets a ``WebhookEventRecord`` row. Its ``processed`` flag is
the only thing that stops an event's side effects from being applied twice,
and it is set in the same transaction as those side effects. Handlers are
also idempotent on their own (keyed by Stripe object ids) because Stripe can
describe one state change with several event ids.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from academy.errors import (
    AlreadyEnrolledError,
    EnrollmentRevokedError,
    PaymentNotFoundError,
    SignatureError,
    WebhookProcessingError,
)
from academy.models.customer import CustomerProfile
from academy.models.dispute import Dispute
from academy.models.enrollment import EnrollmentStatus
from academy.models.gift import GiftPurchase
from academy.models.installment_plan import InstallmentPlan
from academy.models.payment import Payment, PaymentStatus
from academy.models.refund import Refund
from academy.models.subscription import LIVE_STATUSES, Subscription
from academy.models.webhook_event import WebhookEventRecord
from academy.services import notification_service as notices
from academy.services.enrollment_service import EnrollmentLedger, ProductRef
from academy.services.pricing import DEFAULT_GRACE_PERIOD_DAYS, DEFAULT_PROGRAM_DURATION_DAYS
from academy.services.purchase_context import (
    CoursePurchaseContext,
    ExtensionContext,
    GiftContext,
    InvalidPurchaseContext,
    MembershipContext,
    ProgramPurchaseContext,
    from_metadata,
)

PROCESSED = "processed"
ALREADY_PROCESSED = "already_processed"
IGNORED = "ignored"

# Subscription statuses that take membership access away
REVOKE_REASONS = {
    "canceled": "Subscription canceled",
    "unpaid": "Subscription payment failed",
    "past_due": "Subscription past due",
}

# Payments in these states are settled; later failure/cancel events are stale
SETTLED = (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED)


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    data: dict
    created: Optional[int] = None
    raw: str = ""


@dataclass(frozen=True)
class ProcessResult:
    event_id: str
    event_type: str
    status: str


def _ts(value) -> Optional[datetime]:
    """Stripe epoch seconds to naive UTC."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _ref(value) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class WebhookProcessor:
    def __init__(
        self,
        session_factory,
        ledger: EnrollmentLedger,
        notifier,
        webhook_secret: str,
        tolerance: int = 300,
        clock=datetime.utcnow,
        price_tiers: Dict[str, str] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.notifier = notifier
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self.clock = clock
        # Stripe price id -> membership tier, for subscriptions without metadata
        self.price_tiers = price_tiers or {}

        self.handlers = {
            "payment_intent.succeeded": self.handle_payment_succeeded,
            "payment_intent.payment_failed": self.handle_payment_failed,
            "payment_intent.canceled": self.handle_payment_canceled,
            "customer.subscription.created": self.handle_subscription_created,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "charge.refunded": self.handle_charge_refunded,
            "charge.dispute.created": self.handle_dispute_created,
            "charge.dispute.updated": self.handle_dispute_updated,
            "charge.dispute.closed": self.handle_dispute_closed,
            "customer.created": self.handle_customer_upsert,
            "customer.updated": self.handle_customer_upsert,
            "payment_method.attached": self.handle_payment_method_attached,
        }

    # --- verification --------------------------------------------------

    def verify(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookEvent:
        """Check the signature over the exact bytes received, then parse them."""
        if not self.webhook_secret:
            raise SignatureError("Webhook secret is not configured")
        if not signature_header:
            raise SignatureError("Missing Stripe-Signature header")

        if isinstance(raw_payload, bytes):
            try:
                payload = raw_payload.decode("utf-8")
            except UnicodeDecodeError:
                raise SignatureError("Payload is not valid UTF-8")
        else:
            payload = raw_payload

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureError(str(e))

        try:
            body = json.loads(payload)
        except ValueError:
            raise SignatureError("Payload is not valid JSON")
        if not isinstance(body, dict) or not body.get("id") or not body.get("type"):
            raise SignatureError("Payload is not a Stripe event")

        data = body.get("data") or {}
        return WebhookEvent(
            id=body["id"],
            type=body["type"],
            data=data.get("object") or {},
            created=body.get("created"),
            raw=payload,
        )

    # --- processing ----------------------------------------------------

    async def _get_record(self, db: AsyncSession, event_id: str) -> Optional[WebhookEventRecord]:
        result = await db.execute(
            select(WebhookEventRecord).filter(WebhookEventRecord.event_id == event_id)
        )
        return result.scalars().first()

    async def _ensure_record(self, db: AsyncSession, event: WebhookEvent) -> WebhookEventRecord:
        record = await self._get_record(db, event.id)
        if record is not None:
            return record

        db.add(
            WebhookEventRecord(
                event_id=event.id,
                event_type=event.type,
                payload=event.raw,
                processed=False,
                processing_attempts=0,
            )
        )
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent delivery inserted it first
            await db.rollback()
        record = await self._get_record(db, event.id)
        if record is None:
            raise RuntimeError(f"Webhook event record {event.id} vanished")
        return record

    async def _record_failure(self, event: WebhookEvent, error: Exception) -> None:
        try:
            async with self.session_factory() as db:
                record = await self._get_record(db, event.id)
                if record is None:
                    return
                record.processing_attempts = (record.processing_attempts or 0) + 1
                record.last_error = f"{type(error).__name__}: {error}"[:2000]
                await db.commit()
        except SQLAlchemyError:
            logging.exception("Could not record failed attempt for event %s", event.id)

    async def process(self, event: WebhookEvent) -> ProcessResult:
        outbox: List[Tuple[str, dict]] = []

        async with self.session_factory() as db:
            try:
                record = await self._ensure_record(db, event)
            except SQLAlchemyError as e:
                logging.exception("Could not load webhook record for %s (%s)", event.id, event.type)
                raise WebhookProcessingError(event.id, event.type, str(e)) from e

            if record.processed:
                logging.info("Event %s (%s) already processed", event.id, event.type)
                return ProcessResult(event.id, event.type, ALREADY_PROCESSED)

            handler = self.handlers.get(event.type)
            status = PROCESSED
            try:
                if handler is None:
                    logging.info("Ignoring unhandled event type %s (%s)", event.type, event.id)
                    status = IGNORED
                else:
                    await handler(db, event.data, outbox)
                record.processed = True
                record.processed_at = self.clock()
                record.processing_attempts = (record.processing_attempts or 0) + 1
                record.last_error = None
                await db.commit()
            except Exception as e:
                await db.rollback()
                logging.exception("Webhook handler failed for event %s (%s)", event.id, event.type)
                await self._record_failure(event, e)
                raise WebhookProcessingError(event.id, event.type, str(e)) from e

        # Only after commit: a rolled back attempt must not notify anyone
        for name, data in outbox:
            self.notifier.trigger(name, data)

        if status == PROCESSED:
            logging.info("Processed event %s (%s)", event.id, event.type)
        return ProcessResult(event.id, event.type, status)

    # --- payment intents -----------------------------------------------

    async def _payment_by_intent(self, db: AsyncSession, intent_id: str) -> Optional[Payment]:
        result = await db.execute(
            select(Payment).filter(Payment.stripe_payment_intent_id == intent_id)
        )
        return result.scalars().first()

    async def _intent_payment(self, db: AsyncSession, intent: dict) -> Optional[Payment]:
        """Local payment for ``intent``, or None for intents we never opened.

        Subscription invoices (first charge and renewals) have their
        PaymentIntent created by Stripe; membership access follows the
        subscription events. An intent carrying our purchase context but no
        row yet raises so that Stripe redelivers it.
        """
        payment = await self._payment_by_intent(db, intent["id"])
        if payment is not None:
            return payment
        invoice = _ref(intent.get("invoice"))
        if invoice:
            logging.info("Intent %s pays invoice %s; nothing to reconcile", intent["id"], invoice)
            return None
        if (intent.get("metadata") or {}).get("type"):
            raise PaymentNotFoundError(f"No payment for intent {intent['id']}")
        logging.warning("Intent %s was not opened by this service; skipping", intent["id"])
        return None

    async def handle_payment_succeeded(self, db: AsyncSession, intent: dict, outbox: list) -> None:
        payment = await self._intent_payment(db, intent)
        if payment is None:
            return
        if payment.status in SETTLED:
            logging.info("Payment %s already %s", payment.stripe_payment_intent_id, payment.status)
            return

        now = self.clock()
        payment.status = PaymentStatus.SUCCEEDED
        payment.stripe_charge_id = _ref(intent.get("latest_charge")) or payment.stripe_charge_id
        payment.paid_at = now
        payment.failure_code = None
        payment.failure_message = None
        await db.flush()

        # Context comes from our own stored copy, never from the event
        context = from_metadata(payment.meta)
        if context is None:
            logging.warning("Payment %s has no purchase context", payment.stripe_payment_intent_id)
            return

        base = {
            "user_id": context.user_id,
            "payment_intent_id": payment.stripe_payment_intent_id,
            "amount": payment.amount,
            "currency": payment.currency,
        }

        if isinstance(context, CoursePurchaseContext):
            await self._grant_course(db, payment, context, now, outbox, base)
        elif isinstance(context, ProgramPurchaseContext):
            await self._grant_program(db, payment, context, now, outbox, base)
        elif isinstance(context, ExtensionContext):
            await self._apply_extension(db, payment, context, outbox, base)
        elif isinstance(context, GiftContext):
            await self._mark_gift_paid(db, payment, context, outbox, base)
        elif isinstance(context, MembershipContext):
            # Membership access follows the subscription events
            outbox.append((notices.PAYMENT_CONFIRMATION, {**base, "tier": context.tier}))

    async def _grant_course(self, db, payment, context, now, outbox, base):
        expires_at = None
        grace_days = 0
        if context.duration_days:
            expires_at = now + timedelta(days=context.duration_days)
            grace_days = DEFAULT_GRACE_PERIOD_DAYS
        enrollment = await self.ledger.grant(
            db,
            context.user_id,
            ProductRef.course(context.course_id),
            expires_at=expires_at,
            grace_period_days=grace_days,
            payment_intent_id=payment.stripe_payment_intent_id,
            metadata={
                "source": context.purchase_type,
                "promo_code": context.promo_code,
                "user_email": context.user_email,
            },
        )
        outbox.append((
            notices.ENROLLMENT_CONFIRMATION,
            {
                **base,
                "email": context.user_email,
                "course_id": context.course_id,
                "course_title": context.course_title,
                "enrollment_id": enrollment.id,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        ))

    async def _grant_program(self, db, payment, context, now, outbox, base):
        installment = context.installment
        if installment and installment.current_installment > 1:
            await self._advance_installment_plan(db, context)
            outbox.append((
                notices.PAYMENT_CONFIRMATION,
                {
                    **base,
                    "program": context.program_type,
                    "installment": installment.current_installment,
                    "total_installments": installment.total_installments,
                },
            ))
            return

        expires_at = now + timedelta(days=context.duration_days or DEFAULT_PROGRAM_DURATION_DAYS)
        enrollment = await self.ledger.grant(
            db,
            context.user_id,
            ProductRef.program(context.program_type),
            expires_at=expires_at,
            grace_period_days=DEFAULT_GRACE_PERIOD_DAYS,
            payment_intent_id=payment.stripe_payment_intent_id,
            metadata={
                "source": context.purchase_type,
                "promo_code": context.promo_code,
                "installment_plan": bool(installment),
                "user_email": context.user_email,
            },
        )
        outbox.append((
            notices.ENROLLMENT_CONFIRMATION,
            {
                **base,
                "email": context.user_email,
                "program": context.program_type,
                "program_name": context.program_name,
                "enrollment_id": enrollment.id,
                "expires_at": expires_at.isoformat(),
            },
        ))

    async def _advance_installment_plan(self, db: AsyncSession, context: ProgramPurchaseContext) -> None:
        result = await db.execute(
            select(InstallmentPlan)
            .filter(
                InstallmentPlan.user_id == context.user_id,
                InstallmentPlan.status == "active",
            )
            .order_by(InstallmentPlan.id.desc())
        )
        plans = [p for p in result.scalars().all() if (p.meta or {}).get("program") == context.program_type]
        if not plans:
            logging.warning(
                "No active installment plan for user %s program %s", context.user_id, context.program_type
            )
            return
        plan = plans[0]
        plan.current_installment = max(plan.current_installment or 1, context.installment.current_installment)
        if plan.current_installment >= plan.total_installments:
            plan.status = "completed"
        await db.flush()

    async def _apply_extension(self, db, payment, context, outbox, base):
        try:
            enrollment = await self.ledger.extend(
                db,
                context.enrollment_id,
                context.extension_days,
                payment_intent_id=payment.stripe_payment_intent_id,
                reason="Purchased extension",
            )
        except (EnrollmentRevokedError, AlreadyEnrolledError) as e:
            # Paid for but not applicable; left for a manual refund
            logging.warning(
                "Extension %s not applied to enrollment %s: %s",
                payment.stripe_payment_intent_id, context.enrollment_id, e.message,
            )
            payment.meta = {**(payment.meta or {}), "extension_refused": e.code}
            await db.flush()
            return
        outbox.append((
            notices.PAYMENT_CONFIRMATION,
            {
                **base,
                "email": context.user_email,
                "enrollment_id": enrollment.id,
                "extension_days": context.extension_days,
                "expires_at": enrollment.expires_at.isoformat(),
            },
        ))

    async def _mark_gift_paid(self, db, payment, context, outbox, base):
        result = await db.execute(select(GiftPurchase).filter(GiftPurchase.id == context.gift_id))
        gift = result.scalars().first()
        if gift is None:
            logging.warning("Gift %s for payment %s not found", context.gift_id, payment.stripe_payment_intent_id)
            return
        gift.status = "paid"
        gift.payment_intent_id = payment.stripe_payment_intent_id
        await db.flush()
        outbox.append((
            notices.PAYMENT_CONFIRMATION,
            {
                **base,
                "gift_id": gift.id,
                "gift_type": gift.gift_type,
                "recipient_email": gift.recipient_email,
                "recipient_name": gift.recipient_name,
            },
        ))

    async def handle_payment_failed(self, db: AsyncSession, intent: dict, outbox: list) -> None:
        payment = await self._intent_payment(db, intent)
        if payment is None:
            return
        if payment.status in SETTLED:
            logging.info("Ignoring failure for settled payment %s", payment.stripe_payment_intent_id)
            return

        error = intent.get("last_payment_error") or {}
        newly_failed = payment.status != PaymentStatus.FAILED
        payment.status = PaymentStatus.FAILED
        payment.failure_code = error.get("code")
        payment.failure_message = error.get("message")
        await db.flush()

        if newly_failed:
            outbox.append((
                notices.PAYMENT_FAILURE,
                {
                    "user_id": payment.user_id,
                    "email": (payment.meta or {}).get("user_email"),
                    "payment_intent_id": payment.stripe_payment_intent_id,
                    "amount": payment.amount,
                    "currency": payment.currency,
                    "product_name": payment.product_name,
                    "failure_message": payment.failure_message,
                },
            ))
        logging.info(
            "Payment %s failed (%s); retry is up to the customer",
            payment.stripe_payment_intent_id, payment.failure_code,
        )

    async def handle_payment_canceled(self, db: AsyncSession, intent: dict, outbox: list) -> None:
        payment = await self._intent_payment(db, intent)
        if payment is None or payment.status in SETTLED:
            return
        payment.status = PaymentStatus.CANCELED
        await db.flush()

    # --- subscriptions -------------------------------------------------

    async def _subscription_owner(self, db: AsyncSession, sub: dict) -> Tuple[Optional[str], Optional[str]]:
        meta = sub.get("metadata") or {}
        user_id = meta.get("user_id")
        tier = meta.get("membership_tier") or meta.get("tier")
        customer_id = _ref(sub.get("customer"))

        if not user_id and customer_id:
            result = await db.execute(
                select(CustomerProfile).filter(CustomerProfile.stripe_customer_id == customer_id)
            )
            profile = result.scalars().first()
            if profile is not None:
                user_id = profile.user_id
        if not tier:
            tier = self.price_tiers.get(self._price_id(sub))
        return (str(user_id) if user_id else None), (tier.upper() if tier else None)

    @staticmethod
    def _price_id(sub: dict) -> Optional[str]:
        items = (sub.get("items") or {}).get("data") or []
        if not items:
            return None
        return _ref(items[0].get("price"))

    @staticmethod
    def _period(sub: dict, key: str):
        value = sub.get(key)
        if value is None:
            # Newer API versions report periods per item
            items = (sub.get("items") or {}).get("data") or []
            if items:
                value = items[0].get(key)
        return _ts(value)

    async def _upsert_subscription(self, db: AsyncSession, sub: dict) -> Tuple[Subscription, bool]:
        result = await db.execute(
            select(Subscription).filter(Subscription.stripe_subscription_id == sub["id"])
        )
        row = result.scalars().first()
        created = row is None
        user_id, tier = await self._subscription_owner(db, sub)

        if created:
            if not user_id or not tier:
                raise InvalidPurchaseContext(f"Subscription {sub['id']} has no owner or tier")
            row = Subscription(stripe_subscription_id=sub["id"], user_id=user_id, tier=tier, meta={})
            db.add(row)
        elif tier:
            row.tier = tier

        row.status = sub.get("status") or row.status
        row.stripe_customer_id = _ref(sub.get("customer")) or row.stripe_customer_id
        row.stripe_price_id = self._price_id(sub) or row.stripe_price_id
        row.current_period_start = self._period(sub, "current_period_start") or row.current_period_start
        row.current_period_end = self._period(sub, "current_period_end") or row.current_period_end
        row.cancel_at_period_end = bool(sub.get("cancel_at_period_end"))
        row.canceled_at = _ts(sub.get("canceled_at")) or row.canceled_at
        details = sub.get("cancellation_details") or {}
        if details.get("reason"):
            row.cancellation_reason = details["reason"]
        row.meta = dict(sub.get("metadata") or {})
        await db.flush()
        return row, created

    async def _revoke_membership(self, db: AsyncSession, subscription: Subscription, reason: str, keep_key=None) -> int:
        revoked = 0
        for enrollment in await self.ledger.find_by_subscription(db, subscription.stripe_subscription_id):
            if enrollment.status != EnrollmentStatus.ACTIVE or enrollment.product_key == keep_key:
                continue
            await self.ledger.revoke(db, enrollment.id, reason)
            revoked += 1
        return revoked

    async def _grant_membership(self, db: AsyncSession, subscription: Subscription, outbox: list):
        product = ProductRef.membership(subscription.tier)
        # A tier change leaves the old tier's enrollment behind
        await self._revoke_membership(db, subscription, "Subscription tier changed", keep_key=product.key)
        existing = await self.ledger.find_active(db, subscription.user_id, product)
        enrollment = await self.ledger.grant(
            db,
            subscription.user_id,
            product,
            subscription_id=subscription.stripe_subscription_id,
            metadata={"source": "membership", "user_email": (subscription.meta or {}).get("user_email")},
        )
        if existing is None or existing.id != enrollment.id:
            outbox.append((
                notices.ENROLLMENT_CONFIRMATION,
                {
                    "user_id": subscription.user_id,
                    "email": (subscription.meta or {}).get("user_email"),
                    "tier": subscription.tier,
                    "subscription_id": subscription.stripe_subscription_id,
                    "enrollment_id": enrollment.id,
                },
            ))
        return enrollment

    async def handle_subscription_created(self, db: AsyncSession, sub: dict, outbox: list) -> None:
        subscription, _ = await self._upsert_subscription(db, sub)
        # Incomplete subscriptions wait for the update that activates them
        if subscription.status in LIVE_STATUSES:
            await self._grant_membership(db, subscription, outbox)

    async def handle_subscription_updated(self, db: AsyncSession, sub: dict, outbox: list) -> None:
        subscription, _ = await self._upsert_subscription(db, sub)
        if subscription.status in LIVE_STATUSES:
            await self._grant_membership(db, subscription, outbox)
        elif subscription.status in REVOKE_REASONS:
            await self._revoke_membership(db, subscription, REVOKE_REASONS[subscription.status])
        else:
            logging.info(
                "Subscription %s is %s, access unchanged",
                subscription.stripe_subscription_id, subscription.status,
            )

    async def handle_subscription_deleted(self, db: AsyncSession, sub: dict, outbox: list) -> None:
        subscription, _ = await self._upsert_subscription(db, sub)
        now = self.clock()
        first_end = subscription.ended_at is None
        subscription.status = "canceled"
        subscription.canceled_at = subscription.canceled_at or now
        if first_end:
            subscription.ended_at = _ts(sub.get("ended_at")) or now
        await db.flush()

        await self._revoke_membership(db, subscription, REVOKE_REASONS["canceled"])
        if first_end:
            outbox.append((
                notices.SUBSCRIPTION_CANCELLATION,
                {
                    "user_id": subscription.user_id,
                    "email": (subscription.meta or {}).get("user_email"),
                    "tier": subscription.tier,
                    "subscription_id": subscription.stripe_subscription_id,
                    "ended_at": subscription.ended_at.isoformat(),
                },
            ))

    # --- charges -------------------------------------------------------

    async def _payment_for_charge(self, db: AsyncSession, charge_id: str, intent_id: str = None) -> Optional[Payment]:
        if charge_id:
            result = await db.execute(select(Payment).filter(Payment.stripe_charge_id == charge_id))
            payment = result.scalars().first()
            if payment is not None:
                return payment
        if intent_id:
            return await self._payment_by_intent(db, intent_id)
        return None

    async def handle_charge_refunded(self, db: AsyncSession, charge: dict, outbox: list) -> None:
        payment = await self._payment_for_charge(db, charge["id"], _ref(charge.get("payment_intent")))
        if payment is None:
            raise PaymentNotFoundError(f"No payment for charge {charge['id']}")

        amount_refunded = int(charge.get("amount_refunded") or 0)
        refunds = (charge.get("refunds") or {}).get("data") or []
        latest = refunds[0] if refunds else {}
        refund_id = latest.get("id") or f"{charge['id']}:{amount_refunded}"

        result = await db.execute(select(Refund).filter(Refund.stripe_refund_id == refund_id))
        if result.scalars().first() is not None:
            logging.info("Refund %s already recorded", refund_id)
            return

        db.add(
            Refund(
                stripe_refund_id=refund_id,
                payment_id=payment.id,
                user_id=payment.user_id,
                stripe_charge_id=charge["id"],
                amount=amount_refunded,
                currency=charge.get("currency") or payment.currency,
                status=latest.get("status") or "succeeded",
                reason=latest.get("reason") or "requested_by_customer",
                refunded_at=self.clock(),
            )
        )
        payment.status = PaymentStatus.REFUNDED
        payment.stripe_charge_id = payment.stripe_charge_id or charge["id"]
        await db.flush()

        full_refund = amount_refunded >= int(charge.get("amount") or payment.amount)
        if full_refund:
            for enrollment in await self.ledger.find_by_payment_intent(db, payment.stripe_payment_intent_id):
                if enrollment.status != EnrollmentStatus.REVOKED:
                    await self.ledger.revoke(db, enrollment.id, "Full refund issued")

        outbox.append((
            notices.REFUND_CONFIRMATION,
            {
                "user_id": payment.user_id,
                "email": (payment.meta or {}).get("user_email"),
                "payment_intent_id": payment.stripe_payment_intent_id,
                "amount_refunded": amount_refunded,
                "currency": charge.get("currency") or payment.currency,
                "full_refund": full_refund,
            },
        ))
        logging.info("Charge %s refunded %s (full=%s)", charge["id"], amount_refunded, full_refund)

    # --- disputes ------------------------------------------------------

    async def _get_dispute(self, db: AsyncSession, dispute_id: str) -> Optional[Dispute]:
        result = await db.execute(select(Dispute).filter(Dispute.stripe_dispute_id == dispute_id))
        return result.scalars().first()

    async def _insert_dispute(self, db: AsyncSession, dispute: dict) -> Dispute:
        charge_id = _ref(dispute.get("charge"))
        payment = await self._payment_for_charge(db, charge_id, _ref(dispute.get("payment_intent")))
        if payment is None:
            logging.warning("Dispute %s references unknown charge %s", dispute["id"], charge_id)
        evidence = dispute.get("evidence_details") or {}
        row = Dispute(
            stripe_dispute_id=dispute["id"],
            payment_id=payment.id if payment else None,
            user_id=payment.user_id if payment else None,
            stripe_charge_id=charge_id,
            amount=dispute.get("amount"),
            currency=dispute.get("currency"),
            status=dispute.get("status") or "needs_response",
            reason=dispute.get("reason"),
            evidence_due_by=_ts(evidence.get("due_by")),
            evidence_submitted=bool(evidence.get("submission_count")),
        )
        db.add(row)
        await db.flush()
        return row

    async def handle_dispute_created(self, db: AsyncSession, dispute: dict, outbox: list) -> None:
        if await self._get_dispute(db, dispute["id"]) is not None:
            return
        row = await self._insert_dispute(db, dispute)
        outbox.append((
            notices.DISPUTE_NOTIFICATION,
            {
                "dispute_id": row.stripe_dispute_id,
                "charge_id": row.stripe_charge_id,
                "user_id": row.user_id,
                "amount": row.amount,
                "currency": row.currency,
                "reason": row.reason,
                "evidence_due_by": row.evidence_due_by.isoformat() if row.evidence_due_by else None,
            },
        ))
        logging.warning("Dispute %s opened on charge %s", row.stripe_dispute_id, row.stripe_charge_id)

    async def handle_dispute_updated(self, db: AsyncSession, dispute: dict, outbox: list) -> None:
        row = await self._get_dispute(db, dispute["id"])
        if row is None:
            row = await self._insert_dispute(db, dispute)
        row.status = dispute.get("status") or row.status
        evidence = dispute.get("evidence_details") or {}
        row.evidence_submitted = row.evidence_submitted or bool(evidence.get("submission_count"))
        await db.flush()

    async def handle_dispute_closed(self, db: AsyncSession, dispute: dict, outbox: list) -> None:
        await self.handle_dispute_updated(db, dispute, outbox)
        row = await self._get_dispute(db, dispute["id"])
        if row.resolved_at is None:
            row.resolved_at = self.clock()
        await db.flush()
        logging.info("Dispute %s closed as %s", row.stripe_dispute_id, row.status)

    # --- customers -----------------------------------------------------

    async def _get_profile(self, db: AsyncSession, customer_id: str) -> Optional[CustomerProfile]:
        result = await db.execute(
            select(CustomerProfile).filter(CustomerProfile.stripe_customer_id == customer_id)
        )
        return result.scalars().first()

    async def handle_customer_upsert(self, db: AsyncSession, customer: dict, outbox: list) -> None:
        profile = await self._get_profile(db, customer["id"])
        if profile is None:
            profile = CustomerProfile(stripe_customer_id=customer["id"])
            db.add(profile)
        user_id = (customer.get("metadata") or {}).get("user_id")
        if user_id:
            profile.user_id = str(user_id)
        profile.email = customer.get("email") or profile.email
        profile.name = customer.get("name") or profile.name
        profile.phone = customer.get("phone") or profile.phone
        default_method = _ref((customer.get("invoice_settings") or {}).get("default_payment_method"))
        if default_method:
            profile.default_payment_method_id = default_method
        await db.flush()

    async def handle_payment_method_attached(self, db: AsyncSession, method: dict, outbox: list) -> None:
        customer_id = _ref(method.get("customer"))
        if not customer_id:
            logging.info("Payment method %s attached without a customer", method.get("id"))
            return
        profile = await self._get_profile(db, customer_id)
        if profile is None:
            profile = CustomerProfile(stripe_customer_id=customer_id)
            db.add(profile)
        card = method.get("card") or {}
        profile.default_payment_method_id = method.get("id")
        profile.default_payment_method_type = method.get("type")
        profile.default_payment_method_last4 = card.get("last4")
        profile.default_payment_method_brand = card.get("brand")
        await db.flush()
