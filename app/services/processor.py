"""
Stripe adapter.

All calls to the payment processor go through `StripeProcessor`, which maps
Stripe's exceptions onto the billing error taxonomy:

- card declines / bad payment method  -> PaymentMethodInvalid
- other rejected requests             -> ProcessorRejected
- rate limits / outages (reads)       -> retried, then ProcessorUnavailable
- network failures on mutations       -> retried with the same idempotency
                                         key, then OutcomeUnknown
"""
import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

import stripe

from app.core.config import settings
from app.core.errors import (
    OutcomeUnknown,
    PaymentMethodInvalid,
    ProcessorRejected,
    ProcessorUnavailable,
)
from app.domain.schemas import PaymentMethodSummary, PlanType, SubscriptionStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Pinned so subscription period fields and payment intents keep their shape
STRIPE_API_VERSION = "2024-06-20"

STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.UNPAID,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.UNPAID,
}


def _ts(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def map_status(processor_status: str) -> SubscriptionStatus:
    return STATUS_MAP.get(processor_status, SubscriptionStatus.UNPAID)


def subscription_snapshot(subscription) -> dict:
    """Flatten a Stripe subscription object into record fields."""
    items = (subscription.get("items") or {}).get("data") or []
    item = items[0] if items else {}
    price = item.get("price") or {}
    interval = (price.get("recurring") or {}).get("interval")

    period_start = subscription.get("current_period_start") or item.get("current_period_start")
    period_end = subscription.get("current_period_end") or item.get("current_period_end")

    snapshot = {
        "external_subscription_id": subscription.get("id"),
        "customer_id": subscription.get("customer"),
        "status": map_status(subscription.get("status", "")),
        "price_id": price.get("id"),
        "plan_type": PlanType.ANNUAL if interval == "year" else PlanType.MONTHLY,
        "current_period_start": _ts(period_start),
        "current_period_end": _ts(period_end),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "canceled_at": _ts(subscription.get("ended_at") or subscription.get("canceled_at")),
    }
    return snapshot


def client_secret_for(subscription) -> Optional[str]:
    """Client secret the browser needs to finish a pending payment (3-D Secure)."""
    invoice = subscription.get("latest_invoice")
    if not invoice or isinstance(invoice, str):
        return None
    intent = invoice.get("payment_intent")
    if intent and not isinstance(intent, str):
        return intent.get("client_secret")
    return None


def card_summary(payment_method) -> PaymentMethodSummary:
    card = payment_method.get("card") or {}
    return PaymentMethodSummary(
        brand=card.get("brand"),
        last4=card.get("last4"),
        exp_month=card.get("exp_month"),
        exp_year=card.get("exp_year"),
    )


class StripeProcessor:
    """Synchronous gateway to Stripe."""

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        retries: int | None = None,
        retry_delay: float = 0.5,
    ):
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.retries = settings.stripe_read_retries if retries is None else retries
        self.retry_delay = retry_delay

        stripe.api_key = self.api_key
        stripe.api_version = STRIPE_API_VERSION
        # Our own loop owns retries so timeouts can be reported as unknown outcome
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)

        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY is not set!")

    def _call(self, operation: str, fn: Callable[[], T], mutating: bool = False) -> T:
        """Run a Stripe call with bounded backoff and error mapping."""
        wait = self.retry_delay
        for attempt in range(self.retries + 1):
            try:
                return fn()
            except stripe.CardError as e:
                logger.info(f"Stripe {operation}: card declined ({e.code})")
                raise PaymentMethodInvalid(e.user_message or None)
            except stripe.InvalidRequestError as e:
                if e.param and "payment_method" in e.param:
                    logger.info(f"Stripe {operation}: invalid payment method ({e.code})")
                    raise PaymentMethodInvalid()
                logger.warning(f"Stripe {operation} rejected: {e}")
                raise ProcessorRejected(e.user_message or None)
            except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
                if attempt < self.retries:
                    logger.warning(
                        f"Stripe {operation} failed, retrying ({attempt + 1}/{self.retries}): {e}"
                    )
                    time.sleep(wait)
                    wait *= 2
                    continue
                logger.error(f"Stripe {operation} failed after {self.retries} retries: {e}")
                if mutating and not isinstance(e, stripe.RateLimitError):
                    raise OutcomeUnknown()
                raise ProcessorUnavailable()
            except stripe.StripeError as e:
                logger.error(f"Stripe {operation} error: {e}")
                if mutating:
                    raise OutcomeUnknown()
                raise ProcessorUnavailable()
        raise ProcessorUnavailable()

    # ---- customers & payment methods ----------------------------------

    def create_customer(self, user_id: str, email: str | None) -> str:
        customer = self._call(
            "create_customer",
            lambda: stripe.Customer.create(
                email=email,
                metadata={"user_id": user_id},
                idempotency_key=f"customer-{user_id}",
            ),
            mutating=True,
        )
        return customer["id"]

    def attach_payment_method(self, customer_id: str, payment_method_id: str) -> PaymentMethodSummary:
        """Attach a tokenized card and make it the customer's default."""
        self._call(
            "attach_payment_method",
            lambda: stripe.PaymentMethod.attach(payment_method_id, customer=customer_id),
            mutating=True,
        )
        self._call(
            "set_default_payment_method",
            lambda: stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
            ),
            mutating=True,
        )
        payment_method = self._call(
            "retrieve_payment_method",
            lambda: stripe.PaymentMethod.retrieve(payment_method_id),
        )
        return card_summary(payment_method)

    # ---- subscriptions ------------------------------------------------

    def create_subscription(self, customer_id: str, price_id: str, idempotency_key: str):
        return self._call(
            "create_subscription",
            lambda: stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                payment_behavior="default_incomplete",
                payment_settings={
                    "payment_method_types": ["card"],
                    "save_default_payment_method": "on_subscription",
                },
                expand=["latest_invoice.payment_intent"],
                idempotency_key=idempotency_key,
            ),
            mutating=True,
        )

    def retrieve_subscription(self, external_subscription_id: str):
        return self._call(
            "retrieve_subscription",
            lambda: stripe.Subscription.retrieve(
                external_subscription_id,
                expand=["latest_invoice.payment_intent"],
            ),
        )

    def cancel_at_period_end(self, external_subscription_id: str, idempotency_key: str):
        """Schedule cancellation. `idempotency_key` must be unique per cancel request."""
        return self._call(
            "cancel_subscription",
            lambda: stripe.Subscription.modify(
                external_subscription_id,
                cancel_at_period_end=True,
                idempotency_key=idempotency_key,
            ),
            mutating=True,
        )

    # ---- portal & webhooks --------------------------------------------

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._call(
            "create_portal_session",
            lambda: stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url),
        )
        return session["url"]

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        """Verify a webhook signature and return the event as a plain dict.

        Raises:
            ValueError: Payload is not valid JSON
            stripe.SignatureVerificationError: Signature does not match
        """
        stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        return json.loads(payload)
