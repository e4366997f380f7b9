"""
Billing operations gateway.

User-initiated billing mutations: checkout, confirmation of a pending
checkout, cancellation, payment method changes, the hosted billing portal,
and beta code redemption. Each call talks to the processor at most a few
times, then writes the result to the Subscription Record Store and drops
the user's cached access snapshot.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from app.core.access import to_utc
from app.core.config import settings
from app.core.errors import (
    AlreadySubscribed,
    BetaCodeInvalid,
    InvalidPrice,
    InvalidTransition,
    NoActiveSubscription,
    NoBillingAccount,
    PaymentMethodInvalid,
)
from app.domain.schemas import (
    CheckoutState,
    PaymentMethodSummary,
    SubscriptionRecord,
    SubscriptionStatus,
)
from app.repositories.subscription import SubscriptionRepository
from app.repositories.user import UserRepository
from app.services import access_cache
from app.services.processor import StripeProcessor, client_secret_for, subscription_snapshot

logger = logging.getLogger(__name__)

PAYMENT_METHOD_PATTERN = re.compile(r"^pm_[A-Za-z0-9_]+$")

CHECKOUT_TRANSITIONS: dict[CheckoutState, frozenset[CheckoutState]] = {
    CheckoutState.INITIATED: frozenset({
        CheckoutState.REQUIRES_CONFIRMATION,
        CheckoutState.ACTIVE,
        CheckoutState.FAILED,
    }),
    CheckoutState.REQUIRES_CONFIRMATION: frozenset({
        CheckoutState.REQUIRES_CONFIRMATION,
        CheckoutState.ACTIVE,
        CheckoutState.FAILED,
    }),
    CheckoutState.ACTIVE: frozenset(),
    CheckoutState.FAILED: frozenset(),
}


def checkout_state_for(status: SubscriptionStatus) -> CheckoutState:
    if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
        return CheckoutState.ACTIVE
    if status == SubscriptionStatus.INCOMPLETE:
        return CheckoutState.REQUIRES_CONFIRMATION
    return CheckoutState.FAILED


def advance_checkout(current: CheckoutState, status: SubscriptionStatus) -> CheckoutState:
    """Move a checkout to the state implied by the processor status."""
    target = checkout_state_for(status)
    if target == current and not CHECKOUT_TRANSITIONS[current]:
        return current
    if target not in CHECKOUT_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)
    return target


@dataclass
class CheckoutResult:
    state: CheckoutState
    record: Optional[SubscriptionRecord] = None
    client_secret: Optional[str] = None
    external_subscription_id: Optional[str] = None


def validate_payment_method_token(token: str) -> str:
    token = (token or "").strip()
    if not PAYMENT_METHOD_PATTERN.match(token):
        raise PaymentMethodInvalid("That payment method token is malformed.")
    return token


class BillingService:

    def __init__(
        self,
        processor: StripeProcessor | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.processor = processor or StripeProcessor()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _ensure_customer(self, user: dict) -> str:
        customer_id = user.get("stripe_customer_id")
        if customer_id:
            return customer_id
        customer_id = self.processor.create_customer(user["id"], user.get("email"))
        UserRepository.set_stripe_customer_id(user["id"], customer_id)
        user["stripe_customer_id"] = customer_id
        return customer_id

    def _require_customer(self, user: dict) -> str:
        customer_id = user.get("stripe_customer_id")
        if not customer_id:
            raise NoBillingAccount()
        return customer_id

    # ---- checkout ----------------------------------------------------

    def create_subscription(self, user: dict, price_id: str, payment_method_token: str) -> CheckoutResult:
        """Start a subscription for `user` on `price_id`.

        Returns a CheckoutResult in state `active` when the first payment went
        through, or `requires_confirmation` with a client secret the browser
        must use to finish authentication before the record counts as active.
        A checkout still awaiting confirmation is re-read first and returned
        as is while it stays pending; no second processor subscription is
        created for it.

        Raises:
            InvalidPrice: Unknown price id
            PaymentMethodInvalid: Malformed token or the processor declined it
            AlreadySubscribed: The user already has a live subscription
            OutcomeUnknown: The processor timed out mid-checkout
        """
        plan_type = settings.price_plans.get(price_id)
        if plan_type is None:
            raise InvalidPrice()
        token = validate_payment_method_token(payment_method_token)

        current = SubscriptionRepository.get_active_for_user(user["id"], now=self.clock())
        if current is not None and current.is_live:
            raise AlreadySubscribed()

        latest = SubscriptionRepository.get_latest_for_user(user["id"])
        if latest is not None and latest.status == SubscriptionStatus.INCOMPLETE:
            # Settle the pending checkout before starting another one
            pending = self.confirm_subscription(user)
            if pending.state == CheckoutState.REQUIRES_CONFIRMATION:
                logger.info(
                    f"Checkout for user {user['id']}: resuming pending subscription "
                    f"{pending.external_subscription_id}"
                )
                return pending
            if pending.record is not None and pending.record.is_live:
                raise AlreadySubscribed()

        state = CheckoutState.INITIATED
        customer_id = self._ensure_customer(user)
        summary = self.processor.attach_payment_method(customer_id, token)
        subscription = self.processor.create_subscription(
            customer_id,
            price_id,
            idempotency_key=f"checkout-{user['id']}-{price_id}-{token}",
        )
        snapshot = subscription_snapshot(subscription)
        state = advance_checkout(state, snapshot["status"])
        logger.info(
            f"Checkout for user {user['id']}: processor subscription "
            f"{snapshot['external_subscription_id']} is {snapshot['status'].value} -> {state.value}"
        )

        if state == CheckoutState.FAILED:
            return CheckoutResult(state=state, external_subscription_id=snapshot["external_subscription_id"])

        record = SubscriptionRepository.create(
            user_id=user["id"],
            external_subscription_id=snapshot["external_subscription_id"],
            plan_type=snapshot["plan_type"] if snapshot["price_id"] else plan_type,
            status=snapshot["status"],
            current_period_start=snapshot["current_period_start"],
            current_period_end=snapshot["current_period_end"],
            price_id=snapshot["price_id"] or price_id,
            cancel_at_period_end=snapshot["cancel_at_period_end"],
            payment_method=summary,
        )
        access_cache.invalidate(user["id"])

        return CheckoutResult(
            state=state,
            record=record,
            client_secret=client_secret_for(subscription) if state == CheckoutState.REQUIRES_CONFIRMATION else None,
            external_subscription_id=record.external_subscription_id,
        )

    def confirm_subscription(self, user: dict) -> CheckoutResult:
        """Resolve a checkout left in `requires_confirmation`.

        Re-reads the processor subscription after the browser finished
        authentication and applies it to the store.
        """
        record = SubscriptionRepository.get_latest_for_user(user["id"])
        if record is None:
            raise NoActiveSubscription()
        if record.status != SubscriptionStatus.INCOMPLETE:
            return CheckoutResult(
                state=checkout_state_for(record.status),
                record=record,
                external_subscription_id=record.external_subscription_id,
            )

        subscription = self.processor.retrieve_subscription(record.external_subscription_id)
        snapshot = subscription_snapshot(subscription)
        state = advance_checkout(CheckoutState.REQUIRES_CONFIRMATION, snapshot["status"])
        record = SubscriptionRepository.apply_snapshot(record.id, snapshot, effective_at=self.clock())
        access_cache.invalidate(user["id"])

        return CheckoutResult(
            state=state,
            record=record,
            client_secret=client_secret_for(subscription) if state == CheckoutState.REQUIRES_CONFIRMATION else None,
            external_subscription_id=record.external_subscription_id,
        )

    # ---- cancellation --------------------------------------------------

    def cancel_subscription(self, user: dict, reason: str | None = None) -> SubscriptionRecord:
        """Schedule the user's subscription to end at the current period end.

        The status stays as it is; access continues until the period end and
        the processor's own cancellation event finalizes the record.

        Raises:
            NoActiveSubscription: The user has no live subscription
        """
        record = SubscriptionRepository.get_active_for_user(user["id"], now=self.clock())
        if record is None or not record.is_live:
            raise NoActiveSubscription()
        if record.cancel_at_period_end and record.cancel_reason == reason:
            return record

        # Keyed on the record version: a retry replays, a later cancel is new
        self.processor.cancel_at_period_end(
            record.external_subscription_id,
            idempotency_key=f"cancel-{record.external_subscription_id}-v{record.version}",
        )
        record = SubscriptionRepository.set_cancel_at_period_end(record.id, reason, effective_at=self.clock())
        access_cache.invalidate(user["id"])
        logger.info(
            f"User {user['id']} canceled subscription {record.id}; access until {record.current_period_end}"
        )
        return record

    # ---- payment methods & portal ------------------------------------

    def update_payment_method(self, user: dict, payment_method_token: str) -> PaymentMethodSummary:
        """Make a new card the default. Never changes subscription status."""
        token = validate_payment_method_token(payment_method_token)
        customer_id = self._require_customer(user)
        summary = self.processor.attach_payment_method(customer_id, token)

        record = SubscriptionRepository.get_active_for_user(user["id"], now=self.clock())
        if record is not None:
            SubscriptionRepository.update_payment_method(record.id, summary)
            access_cache.invalidate(user["id"])
        return summary

    def open_billing_portal(self, user: dict) -> str:
        customer_id = self._require_customer(user)
        return self.processor.create_portal_session(
            customer_id,
            return_url=f"{settings.web_app_url}/account/billing",
        )

    # ---- beta ----------------------------------------------------------

    def redeem_beta_code(self, user: dict, code: str) -> dict:
        """Grant the beta window tied to `code`.

        Raises:
            BetaCodeInvalid: Unknown or already-closed code
            AlreadySubscribed: The user already converted to a subscription
        """
        expires_raw = settings.beta_codes.get(code.strip())
        if not expires_raw:
            raise BetaCodeInvalid()
        expires_at = to_utc(datetime.fromisoformat(expires_raw))
        if expires_at < self.clock():
            raise BetaCodeInvalid("That beta access code has expired.")

        if SubscriptionRepository.get_latest_for_user(user["id"]) is not None:
            raise AlreadySubscribed("Beta access is only available before subscribing.")

        updated = UserRepository.set_beta_access(user["id"], code.strip(), expires_at)
        access_cache.invalidate(user["id"])
        return updated or {**user, "beta_access_code": code.strip(), "beta_expires_at": expires_at}
