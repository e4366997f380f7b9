"""
Billing event ingestor.

Applies Stripe webhook events to the Subscription Record Store exactly once.

- Every event is claimed by id before it is applied and marked applied
  afterwards; a second delivery of an applied event is a no-op. A delivery
  that meets a fresh unsettled claim is refused and redelivered later, and
  an abandoned one is taken over.
- Ordering comes from the event's own `created` timestamp. The store
  ignores changes older than the last one it applied, so a late event
  never rolls a record back.
- Unknown or malformed events, including recognized types whose payload
  cannot be read, are logged and acknowledged.
- If applying a recognized event fails for any other reason the claim is
  released and the error propagates; the webhook answers 5xx and Stripe
  redelivers.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from app.core.errors import AlreadySubscribed, EventInProgress, EventNotReady, InvalidTransition
from app.domain.schemas import (
    Invoice,
    InvoiceStatus,
    SubscriptionRecord,
    SubscriptionStatus,
)
from app.repositories.billing_event import BillingEventRepository, ClaimResult
from app.repositories.subscription import SubscriptionRepository
from app.repositories.user import UserRepository
from app.services import access_cache
from app.services.email import get_email_service
from app.services.processor import subscription_snapshot

logger = logging.getLogger(__name__)


class IngestOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"


# Subscription statuses a successful payment brings back to active
RECOVERABLE_STATUSES = frozenset({
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.UNPAID,
    SubscriptionStatus.INCOMPLETE,
})


def _ts(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    subscription = invoice.get("subscription")
    if subscription is None:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    return subscription


def _read_snapshot(subscription: dict) -> dict:
    snapshot = subscription_snapshot(subscription)
    if not snapshot["external_subscription_id"]:
        raise ValueError("subscription object has no id")
    return snapshot


def invoice_from_event(invoice: dict, status: InvoiceStatus | None = None) -> Invoice:
    """Build an invoice line from a Stripe invoice object."""
    status = status or InvoiceStatus(invoice.get("status") or "open")
    paid_at = _ts((invoice.get("status_transitions") or {}).get("paid_at"))
    amount = invoice.get("amount_paid") if status == InvoiceStatus.PAID else invoice.get("amount_due")
    return Invoice(
        id=invoice["id"],
        amount=amount or invoice.get("total") or 0,
        currency=invoice.get("currency") or "usd",
        status=status,
        date=_ts(invoice.get("created")) or datetime.now(timezone.utc),
        paid_at=paid_at if status == InvoiceStatus.PAID else None,
        url=invoice.get("hosted_invoice_url"),
    )


class BillingEventIngestor:

    def __init__(self, notify: bool = True):
        self.notify = notify
        self._handlers: dict[str, Callable[[dict, datetime], Optional[str]]] = {
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "customer.subscription.trial_will_end": self._on_trial_will_end,
            "invoice.created": self._on_invoice_recorded,
            "invoice.finalized": self._on_invoice_recorded,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_payment_failed,
            "invoice.voided": self._on_invoice_closed,
            "invoice.marked_uncollectible": self._on_invoice_closed,
            "invoice.payment_action_required": self._on_payment_action_required,
        }

    def ingest(self, event: dict) -> IngestOutcome:
        """Apply one processor event.

        Returns:
            The outcome; anything returned means the event can be acknowledged

        Raises:
            EventInProgress: Another worker is applying the same event
            Exception: Transient failures; the claim is released first
        """
        event_id = event.get("id") if isinstance(event, dict) else None
        event_type = event.get("type") if isinstance(event, dict) else None
        obj = ((event.get("data") or {}).get("object")) if isinstance(event, dict) else None
        created = event.get("created") if isinstance(event, dict) else None

        if not event_id or not event_type or not isinstance(obj, dict) or created is None:
            logger.warning(f"Acknowledging malformed billing event: id={event_id!r} type={event_type!r}")
            return IngestOutcome.IGNORED

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled billing event type: {event_type} ({event_id})")
            return IngestOutcome.IGNORED

        try:
            effective_at = _ts(created)
        except (TypeError, ValueError):
            logger.warning(f"Acknowledging billing event {event_id} with unreadable timestamp {created!r}")
            return IngestOutcome.IGNORED

        claim = BillingEventRepository.claim(event_id, event_type, effective_at)
        if claim == ClaimResult.DUPLICATE:
            logger.info(f"Duplicate billing event {event_id} ({event_type}); skipping")
            return IngestOutcome.DUPLICATE
        if claim == ClaimResult.IN_PROGRESS:
            logger.info(f"Billing event {event_id} ({event_type}) is being applied by another worker")
            raise EventInProgress(event_id)

        try:
            user_id = handler(obj, effective_at)
        except (InvalidTransition, AlreadySubscribed) as e:
            # Conflicts are anomalies for reconciliation, not retryable failures
            logger.warning(f"Rejected billing event {event_id} ({event_type}): {e}")
            BillingEventRepository.mark_applied(event_id)
            return IngestOutcome.REJECTED
        except EventNotReady as e:
            logger.info(f"Billing event {event_id} ({event_type}) not ready, releasing for redelivery: {e}")
            BillingEventRepository.release(event_id)
            raise
        except (KeyError, TypeError, ValueError) as e:
            # Bad payload shape; pydantic's ValidationError is a ValueError too
            logger.warning(f"Acknowledging malformed billing event {event_id} ({event_type}): {e!r}")
            BillingEventRepository.mark_applied(event_id)
            return IngestOutcome.IGNORED
        except Exception:
            logger.exception(f"Failed to apply billing event {event_id} ({event_type}); releasing claim")
            BillingEventRepository.release(event_id)
            raise

        BillingEventRepository.mark_applied(event_id)
        if user_id:
            access_cache.invalidate(user_id)
        logger.info(f"Applied billing event {event_id} ({event_type})")
        return IngestOutcome.APPLIED

    # ---- subscription events -------------------------------------------

    def _on_subscription_changed(self, subscription: dict, effective_at: datetime) -> Optional[str]:
        snapshot = _read_snapshot(subscription)
        record = SubscriptionRepository.get_by_external_id(snapshot["external_subscription_id"])
        if record is not None:
            SubscriptionRepository.apply_snapshot(record.id, snapshot, effective_at)
            return record.user_id

        user = UserRepository.get_by_stripe_customer_id(snapshot["customer_id"]) if snapshot["customer_id"] else None
        if user is None:
            logger.warning(
                f"No user for customer {snapshot['customer_id']}; "
                f"ignoring subscription {snapshot['external_subscription_id']}"
            )
            return None
        if snapshot["current_period_start"] is None or snapshot["current_period_end"] is None:
            logger.warning(f"Subscription {snapshot['external_subscription_id']} has no billing period; ignoring")
            return None

        record = SubscriptionRepository.create(
            user_id=user["id"],
            external_subscription_id=snapshot["external_subscription_id"],
            plan_type=snapshot["plan_type"],
            status=snapshot["status"],
            current_period_start=snapshot["current_period_start"],
            current_period_end=snapshot["current_period_end"],
            price_id=snapshot["price_id"] or "",
            cancel_at_period_end=snapshot["cancel_at_period_end"],
            last_event_at=effective_at,
        )
        # create() returns the existing row if a checkout beat us to it
        if record.last_event_at is None or record.last_event_at != effective_at:
            SubscriptionRepository.apply_snapshot(record.id, snapshot, effective_at)
        return record.user_id

    def _on_subscription_deleted(self, subscription: dict, effective_at: datetime) -> Optional[str]:
        snapshot = _read_snapshot(subscription)
        snapshot["status"] = SubscriptionStatus.CANCELED
        record = SubscriptionRepository.get_by_external_id(snapshot["external_subscription_id"])
        if record is None:
            logger.warning(f"Cancellation for unknown subscription {snapshot['external_subscription_id']}")
            return None
        SubscriptionRepository.apply_snapshot(record.id, snapshot, effective_at)
        return record.user_id

    def _on_trial_will_end(self, subscription: dict, effective_at: datetime) -> Optional[str]:
        logger.info(f"Trial ending soon for subscription {subscription.get('id')}")
        return None

    # ---- invoice events --------------------------------------------------

    def _record_for_invoice(self, invoice: dict) -> Optional[SubscriptionRecord]:
        external_id = _invoice_subscription_id(invoice)
        if not external_id:
            logger.info(f"Invoice {invoice.get('id')} is not tied to a subscription; ignoring")
            return None
        record = SubscriptionRepository.get_by_external_id(external_id)
        if record is None:
            raise EventNotReady(f"subscription {external_id} not recorded yet")
        return record

    def _on_invoice_recorded(self, invoice: dict, effective_at: datetime) -> Optional[str]:
        record = self._record_for_invoice(invoice)
        if record is None:
            return None
        SubscriptionRepository.append_invoice(record.id, invoice_from_event(invoice))
        return record.user_id

    def _on_invoice_paid(self, invoice: dict, effective_at: datetime) -> Optional[str]:
        record = self._record_for_invoice(invoice)
        if record is None:
            return None
        line = invoice_from_event(invoice, InvoiceStatus.PAID)
        SubscriptionRepository.append_invoice(record.id, line)

        if record.status in RECOVERABLE_STATUSES:
            SubscriptionRepository.apply_status_transition(record.id, SubscriptionStatus.ACTIVE, effective_at)

        if invoice.get("billing_reason") == "subscription_cycle":
            self._notify_user(
                record.user_id,
                lambda email, to: email.send_renewal_receipt(to, line.amount, line.currency, line.url),
            )
        return record.user_id

    def _on_invoice_payment_failed(self, invoice: dict, effective_at: datetime) -> Optional[str]:
        record = self._record_for_invoice(invoice)
        if record is None:
            return None
        line = invoice_from_event(invoice, InvoiceStatus.OPEN)
        stored = SubscriptionRepository.append_invoice(record.id, line)
        if stored.status != InvoiceStatus.OPEN:
            logger.info(f"Invoice {line.id} is already {stored.status.value}; ignoring late payment failure")
            return record.user_id

        if record.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            SubscriptionRepository.apply_status_transition(record.id, SubscriptionStatus.PAST_DUE, effective_at)

        reason = (invoice.get("last_finalization_error") or {}).get("message")
        last4 = record.payment_method.last4 if record.payment_method else None
        self._notify_user(
            record.user_id,
            lambda email, to: email.send_payment_failed(to, line.amount, line.currency, reason, last4),
        )
        return record.user_id

    def _on_invoice_closed(self, invoice: dict, effective_at: datetime) -> Optional[str]:
        record = self._record_for_invoice(invoice)
        if record is None:
            return None
        line = invoice_from_event(invoice)
        SubscriptionRepository.append_invoice(record.id, line)
        return record.user_id

    def _on_payment_action_required(self, invoice: dict, effective_at: datetime) -> Optional[str]:
        record = self._record_for_invoice(invoice)
        if record is None:
            return None
        line = invoice_from_event(invoice, InvoiceStatus.OPEN)
        self._notify_user(
            record.user_id,
            lambda email, to: email.send_payment_action_required(to, line.amount, line.currency, line.url),
        )
        return record.user_id

    # ---- notifications ---------------------------------------------------

    def _notify_user(self, user_id: str, send: Callable) -> None:
        """Best-effort email; a failed send never fails ingestion."""
        if not self.notify:
            return
        try:
            user = UserRepository.get_by_id(user_id)
            if not user or not user.get("email"):
                return
            send(get_email_service(), user["email"])
        except Exception as e:
            logger.error(f"Billing notification to user {user_id} failed: {e}")
