"""Shared fakes and builders for the test suite."""

import hashlib
import hmac
import json
import sys
import time
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

sys.path.append(str(Path(__file__).resolve().parents[1]))

import academy.db.base  # noqa: F401,E402
from academy.config import Settings  # noqa: E402
from academy.db.base_class import Base  # noqa: E402
from academy.db.session import make_session_factory  # noqa: E402
from academy.dependencies import build_services  # noqa: E402
from academy.errors import GatewayError  # noqa: E402
from academy.models.payment import Payment, PaymentStatus  # noqa: E402
from academy.services.payment_gateway import PaymentIntentResult, SubscriptionResult  # noqa: E402
from academy.services.purchase_context import to_metadata  # noqa: E402
from academy.services.webhook_service import WebhookEvent  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"
PRICE_IDS = {"BASIC": "price_basic", "PROFESSIONAL": "price_pro", "PREMIUM": "price_premium"}
START = datetime(2026, 1, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def __call__(self, name, data):
        self.sent.append((name, data))
        if self.fail:
            raise RuntimeError("mail service down")

    def names(self):
        return [name for name, _ in self.sent]


class FakeGateway:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.customers = []
        self.intents = []
        self.subscriptions = []

    async def create_customer(self, email, name=None, metadata=None):
        if self.fail:
            raise GatewayError("card network unavailable")
        self.customers.append({"email": email, "name": name, "metadata": metadata})
        return f"cus_{len(self.customers)}"

    async def create_payment_intent(self, amount, currency, customer_ref, metadata, description=None):
        if self.fail:
            raise GatewayError("card network unavailable")
        self.intents.append({
            "amount": amount,
            "currency": currency,
            "customer": customer_ref,
            "metadata": dict(metadata),
            "description": description,
        })
        n = len(self.intents)
        return PaymentIntentResult(id=f"pi_{n}", client_secret=f"pi_{n}_secret", status="requires_payment_method")

    async def create_subscription(self, customer_ref, price_ref, metadata, trial_days=None):
        if self.fail:
            raise GatewayError("card network unavailable")
        self.subscriptions.append({
            "customer": customer_ref,
            "price": price_ref,
            "metadata": dict(metadata),
            "trial_days": trial_days,
        })
        n = len(self.subscriptions)
        return SubscriptionResult(
            id=f"sub_{n}", client_secret=f"pi_sub_{n}_secret", status="incomplete", payment_intent_id=f"pi_sub_{n}"
        )


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite+aiosqlite:///:memory:",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        membership_price_ids=dict(PRICE_IDS),
    )
    values.update(overrides)
    return Settings(**values)


async def setup_db(url: str = "sqlite+aiosqlite:///:memory:", poolclass=StaticPool):
    engine = create_async_engine(
        url, connect_args={"check_same_thread": False}, poolclass=poolclass
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, make_session_factory(engine)


def make_services(session_factory, clock=None, sender=None, ops=None, gateway=None):
    return build_services(
        make_settings(),
        session_factory,
        gateway=gateway or FakeGateway(),
        send_email=sender or RecordingSender(),
        ops_alert=ops or RecordingSender(),
        clock=clock or FakeClock(),
    )


async def seed_payment(session_factory, context, intent_id="pi_1", amount=9999, product_type="course", product_id="c1"):
    async with session_factory() as db:
        payment = Payment(
            user_id=context.user_id,
            stripe_payment_intent_id=intent_id,
            amount=amount,
            currency="usd",
            status=PaymentStatus.PENDING,
            product_type=product_type,
            product_id=product_id,
            meta=to_metadata(context),
        )
        db.add(payment)
        await db.commit()
        return payment.id


def make_event(event_type, obj, event_id=None) -> WebhookEvent:
    event_id = event_id or f"evt_{event_type.replace('.', '_')}_{obj.get('id')}"
    body = {"id": event_id, "type": event_type, "data": {"object": obj}, "created": int(time.time())}
    return WebhookEvent(id=event_id, type=event_type, data=obj, created=body["created"], raw=json.dumps(body))


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"
