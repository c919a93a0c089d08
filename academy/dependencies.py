"""Service wiring. Everything is built once per process in ``create_app``."""

from dataclasses import dataclass
from datetime import datetime

from fastapi import Request

from academy.config import Settings
from academy.services.enrollment_service import EnrollmentLedger
from academy.services.notification_service import (
    HttpEmailSender,
    NotificationTrigger,
    log_email_sender,
)
from academy.services.payment_gateway import StripeGateway
from academy.services.purchase_service import PurchaseService
from academy.services.webhook_service import WebhookProcessor
from ops_bot.notify import format_dispute_alert, send_ops_alert


@dataclass
class Services:
    session_factory: object
    ledger: EnrollmentLedger
    notifier: NotificationTrigger
    purchases: PurchaseService
    webhooks: WebhookProcessor


async def telegram_ops_alert(name: str, data: dict) -> None:
    await send_ops_alert(format_dispute_alert(data))


def build_services(
    settings: Settings,
    session_factory,
    gateway=None,
    send_email=None,
    ops_alert=telegram_ops_alert,
    clock=datetime.utcnow,
) -> Services:
    if send_email is None:
        send_email = HttpEmailSender(settings.email_api_url) if settings.email_api_url else log_email_sender

    ledger = EnrollmentLedger(clock=clock)
    notifier = NotificationTrigger(send_email, ops_alert)
    price_ids = settings.membership_price_ids or {}
    purchases = PurchaseService(
        gateway or StripeGateway(settings.stripe_secret_key),
        ledger,
        currency=settings.default_currency,
        membership_price_ids=price_ids,
    )
    webhooks = WebhookProcessor(
        session_factory,
        ledger,
        notifier,
        settings.stripe_webhook_secret,
        tolerance=settings.webhook_tolerance,
        clock=clock,
        price_tiers={price: tier for tier, price in price_ids.items() if price},
    )
    return Services(
        session_factory=session_factory,
        ledger=ledger,
        notifier=notifier,
        purchases=purchases,
        webhooks=webhooks,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_db(request: Request):
    async with request.app.state.services.session_factory() as db:
        yield db
