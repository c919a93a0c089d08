"""Thin async wrapper over the Stripe SDK.

The SDK is synchronous, so every call runs in a worker thread.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import stripe

from academy.errors import GatewayError

# Response shapes (latest_invoice.payment_intent) depend on this version
STRIPE_API_VERSION = "2024-06-20"


@dataclass(frozen=True)
class PaymentIntentResult:
    id: str
    client_secret: Optional[str]
    status: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionResult:
    id: str
    client_secret: Optional[str]
    status: Optional[str] = None
    # First invoice's PaymentIntent; Stripe creates it, not us
    payment_intent_id: Optional[str] = None


class StripeGateway:
    def __init__(self, secret_key: str):
        self.secret_key = secret_key

    async def _call(self, fn, **params):
        params.setdefault("api_key", self.secret_key)
        params.setdefault("stripe_version", STRIPE_API_VERSION)
        try:
            return await asyncio.to_thread(functools.partial(fn, **params))
        except stripe.StripeError as e:
            logging.exception("Stripe call %s failed", getattr(fn, "__qualname__", fn))
            raise GatewayError(getattr(e, "user_message", None) or str(e))

    async def create_customer(
        self, email: str, name: str = None, metadata: Dict[str, str] = None
    ) -> str:
        params = {"email": email, "metadata": metadata or {}}
        if name:
            params["name"] = name
        customer = await self._call(stripe.Customer.create, **params)
        return customer.id

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_ref: Optional[str],
        metadata: Dict[str, str],
        description: str = None,
    ) -> PaymentIntentResult:
        params = {
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_ref:
            params["customer"] = customer_ref
        if description:
            params["description"] = description
        intent = await self._call(stripe.PaymentIntent.create, **params)
        return PaymentIntentResult(
            id=intent.id,
            client_secret=getattr(intent, "client_secret", None),
            status=getattr(intent, "status", None),
        )

    async def create_subscription(
        self,
        customer_ref: str,
        price_ref: str,
        metadata: Dict[str, str],
        trial_days: int = None,
    ) -> SubscriptionResult:
        params = {
            "customer": customer_ref,
            "items": [{"price": price_ref}],
            "metadata": metadata,
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        subscription = await self._call(stripe.Subscription.create, **params)

        client_secret = None
        intent_id = None
        invoice = getattr(subscription, "latest_invoice", None)
        intent = getattr(invoice, "payment_intent", None) if invoice is not None else None
        if isinstance(intent, str):
            intent_id = intent
        elif intent is not None:
            intent_id = getattr(intent, "id", None)
            client_secret = getattr(intent, "client_secret", None)

        return SubscriptionResult(
            id=subscription.id,
            client_secret=client_secret,
            status=getattr(subscription, "status", None),
            payment_intent_id=intent_id,
        )
