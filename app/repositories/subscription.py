"""
Subscription Record Store.

Records are mutated only through versioned updates: every write carries a
`version` precondition and bumps it, so concurrent writers for the same
subscription serialize and the loser re-reads before retrying. Records are
never deleted; cancellation is a status transition.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from postgrest.exceptions import APIError

from app.core.access import to_utc
from app.core.errors import (
    AlreadySubscribed,
    ConcurrentModification,
    InvalidTransition,
    SubscriptionNotFound,
)
from app.domain.schemas import (
    LIVE_STATUSES,
    Invoice,
    InvoiceStatus,
    PaymentMethodSummary,
    PlanType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from database.connection import get_db, with_retry

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

# Versioned writes give up after this many lost races
MAX_WRITE_ATTEMPTS = 3

# Subscription statuses reachable from each status. Same-status updates are
# always allowed; canceled is terminal (a new checkout creates a new record).
STATUS_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.INCOMPLETE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.TRIALING: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.PAST_DUE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.UNPAID: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.CANCELED: frozenset(),
}

# Invoices only move forward; paid and void are final
INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.OPEN, InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.OPEN: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID, InvoiceStatus.UNCOLLECTIBLE}),
    InvoiceStatus.UNCOLLECTIBLE: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.VOID: frozenset(),
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return to_utc(value).isoformat() if value is not None else None


def _invoice_from_row(row: dict) -> Invoice:
    return Invoice(
        id=row["invoice_id"],
        amount=row.get("amount") or 0,
        currency=row.get("currency") or "usd",
        status=row["status"],
        date=row["date"],
        paid_at=row.get("paid_at"),
        url=row.get("url"),
    )


def check_status_transition(
    record: SubscriptionRecord,
    new_status: SubscriptionStatus,
    effective_at: datetime,
    cancel_at_period_end: Optional[bool] = None,
) -> None:
    """Raise InvalidTransition if `record` may not move to `new_status`.

    A record scheduled to cancel at period end may not become canceled
    before that boundary. Snapshots never clear the schedule on a
    cancellation, so an early processor-side cancel of such a record is
    rejected and the event is logged as an anomaly.
    """
    current = record.status
    if new_status != current and new_status not in STATUS_TRANSITIONS[current]:
        raise InvalidTransition(current.value, new_status.value)

    scheduled = record.cancel_at_period_end if cancel_at_period_end is None else cancel_at_period_end
    if (
        new_status == SubscriptionStatus.CANCELED
        and current != SubscriptionStatus.CANCELED
        and scheduled
        and to_utc(effective_at) < to_utc(record.current_period_end)
    ):
        raise InvalidTransition(
            current.value,
            new_status.value,
            "A subscription set to cancel at period end cannot be canceled before the period ends.",
        )


def check_invoice_transition(current: InvoiceStatus, new_status: InvoiceStatus) -> None:
    if new_status != current and new_status not in INVOICE_TRANSITIONS[current]:
        raise InvalidTransition(current.value, new_status.value)


class SubscriptionRepository:

    # ---- reads -------------------------------------------------------

    @staticmethod
    @with_retry()
    def get_by_id(subscription_id: str) -> SubscriptionRecord | None:
        """Get a subscription by its internal ID."""
        db = get_db()
        result = db.table("subscriptions").select("*").eq("id", subscription_id).limit(1).execute()
        return SubscriptionRecord(**result.data[0]) if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_external_id(external_subscription_id: str) -> SubscriptionRecord | None:
        """Get a subscription by the processor's subscription ID."""
        db = get_db()
        result = db.table("subscriptions").select("*").eq(
            "external_subscription_id", external_subscription_id
        ).limit(1).execute()
        return SubscriptionRecord(**result.data[0]) if result and result.data else None

    @staticmethod
    @with_retry()
    def list_for_user(user_id: str) -> list[SubscriptionRecord]:
        """All records for a user, newest period first."""
        db = get_db()
        result = db.table("subscriptions").select("*").eq(
            "user_id", user_id
        ).order("current_period_end", desc=True).execute()
        return [SubscriptionRecord(**row) for row in (result.data if result and result.data else [])]

    @staticmethod
    def get_active_for_user(user_id: str, now: datetime | None = None) -> SubscriptionRecord | None:
        """Get the one record that currently governs the user's access.

        Candidates are live records (active, past_due, trialing) and canceled
        records still inside their paid period. If more than one live record
        exists the store is inconsistent: the anomaly is logged and the record
        with the latest period end is returned.
        """
        now = to_utc(now) if now is not None else datetime.now(timezone.utc)
        records = SubscriptionRepository.list_for_user(user_id)

        live = [r for r in records if r.is_live]
        if len(live) > 1:
            logger.warning(
                f"Invariant violation: user {user_id} has {len(live)} live subscriptions "
                f"({', '.join(r.id for r in live)}); using latest period end"
            )

        candidates = live + [
            r for r in records
            if r.status == SubscriptionStatus.CANCELED and now <= to_utc(r.current_period_end)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda r: to_utc(r.current_period_end))

    @staticmethod
    def get_latest_for_user(user_id: str) -> SubscriptionRecord | None:
        """The user's most recent record in any status."""
        records = SubscriptionRepository.list_for_user(user_id)
        return records[0] if records else None

    @staticmethod
    @with_retry()
    def list_invoices(subscription_id: str) -> list[Invoice]:
        db = get_db()
        result = db.table("subscription_invoices").select("*").eq(
            "subscription_id", subscription_id
        ).order("date", desc=False).execute()
        return [_invoice_from_row(row) for row in (result.data if result and result.data else [])]

    @staticmethod
    def list_invoices_for_user(user_id: str) -> list[Invoice]:
        """Invoice history across every record the user ever had, newest first."""
        invoices: list[Invoice] = []
        for record in SubscriptionRepository.list_for_user(user_id):
            invoices.extend(SubscriptionRepository.list_invoices(record.id))
        return sorted(invoices, key=lambda i: to_utc(i.date), reverse=True)

    @staticmethod
    def get_with_invoices(subscription_id: str) -> SubscriptionRecord | None:
        record = SubscriptionRepository.get_by_id(subscription_id)
        if record is None:
            return None
        return record.model_copy(update={"invoices": SubscriptionRepository.list_invoices(record.id)})

    # ---- creation ----------------------------------------------------

    @staticmethod
    @with_retry()
    def create(
        user_id: str,
        external_subscription_id: str,
        plan_type: PlanType,
        status: SubscriptionStatus,
        current_period_start: datetime,
        current_period_end: datetime,
        price_id: str,
        cancel_at_period_end: bool = False,
        payment_method: PaymentMethodSummary | None = None,
        last_event_at: datetime | None = None,
    ) -> SubscriptionRecord:
        """Create a subscription record.

        Idempotent on the processor subscription ID: if the record already
        exists (e.g. a webhook created it first) the existing one is returned.

        Raises:
            AlreadySubscribed: If the user already has a different live record
        """
        if to_utc(current_period_end) <= to_utc(current_period_start):
            raise ValueError("current_period_end must be after current_period_start")

        existing = SubscriptionRepository.get_by_external_id(external_subscription_id)
        if existing:
            return existing

        data = {
            "user_id": user_id,
            "external_subscription_id": external_subscription_id,
            "plan_type": PlanType(plan_type).value,
            "status": SubscriptionStatus(status).value,
            "current_period_start": _iso(current_period_start),
            "current_period_end": _iso(current_period_end),
            "cancel_at_period_end": cancel_at_period_end,
            "price_id": price_id,
            "payment_method": payment_method.model_dump() if payment_method else None,
            "version": 1,
            "last_event_at": _iso(last_event_at),
        }
        db = get_db()
        try:
            result = db.table("subscriptions").insert(data).execute()
        except APIError as e:
            if e.code != UNIQUE_VIOLATION:
                raise
            # Lost a race on the external id, or the one-live-per-user index fired
            existing = SubscriptionRepository.get_by_external_id(external_subscription_id)
            if existing:
                return existing
            raise AlreadySubscribed()
        return SubscriptionRecord(**result.data[0])

    # ---- versioned mutation ------------------------------------------

    @staticmethod
    @with_retry()
    def _write_versioned(record: SubscriptionRecord, changes: dict) -> SubscriptionRecord | None:
        """Apply `changes` if the row is still at `record.version`.

        Returns the updated record, or None if another writer got there first.
        """
        db = get_db()
        payload = {**changes, "version": record.version + 1, "updated_at": _iso(datetime.now(timezone.utc))}
        result = db.table("subscriptions").update(payload).eq(
            "id", record.id
        ).eq("version", record.version).execute()
        return SubscriptionRecord(**result.data[0]) if result and result.data else None

    @staticmethod
    def mutate(
        subscription_id: str,
        build_changes: Callable[[SubscriptionRecord], dict | None],
    ) -> SubscriptionRecord:
        """Read-check-write loop for a single record.

        `build_changes` receives the freshest record and returns the column
        changes to write, or None for a no-op. It may raise to reject the
        change. The write only lands if nobody else wrote in between.

        Raises:
            SubscriptionNotFound: If the record does not exist
            ConcurrentModification: If every attempt lost the race
        """
        for attempt in range(MAX_WRITE_ATTEMPTS):
            record = SubscriptionRepository.get_by_id(subscription_id)
            if record is None:
                raise SubscriptionNotFound()

            changes = build_changes(record)
            if not changes:
                return record

            updated = SubscriptionRepository._write_versioned(record, changes)
            if updated is not None:
                return updated
            logger.info(
                f"Version conflict on subscription {subscription_id} "
                f"(attempt {attempt + 1}/{MAX_WRITE_ATTEMPTS})"
            )

        logger.error(f"Giving up on subscription {subscription_id} after {MAX_WRITE_ATTEMPTS} version conflicts")
        raise ConcurrentModification()

    @staticmethod
    def _is_stale(record: SubscriptionRecord, effective_at: datetime) -> bool:
        return record.last_event_at is not None and to_utc(effective_at) < to_utc(record.last_event_at)

    @staticmethod
    def _stamp(record: SubscriptionRecord, effective_at: datetime) -> str:
        if record.last_event_at is not None and to_utc(record.last_event_at) > to_utc(effective_at):
            return _iso(record.last_event_at)
        return _iso(effective_at)

    @staticmethod
    def apply_status_transition(
        subscription_id: str,
        new_status: SubscriptionStatus,
        effective_at: datetime,
        canceled_at: datetime | None = None,
    ) -> SubscriptionRecord:
        """Move a record to `new_status` as of `effective_at`.

        Changes older than the last change applied to the record are ignored
        (last writer wins by effective time, not arrival time).

        Raises:
            InvalidTransition: If the move breaks the status rules
        """
        new_status = SubscriptionStatus(new_status)

        def build(record: SubscriptionRecord) -> dict | None:
            if SubscriptionRepository._is_stale(record, effective_at):
                logger.info(
                    f"Ignoring stale transition {record.status.value} -> {new_status.value} "
                    f"for subscription {record.id} (effective {_iso(effective_at)})"
                )
                return None
            check_status_transition(record, new_status, effective_at)
            changes = {
                "status": new_status.value,
                "last_event_at": SubscriptionRepository._stamp(record, effective_at),
            }
            if new_status == SubscriptionStatus.CANCELED and record.canceled_at is None:
                changes["canceled_at"] = _iso(canceled_at or effective_at)
            return changes

        return SubscriptionRepository.mutate(subscription_id, build)

    @staticmethod
    def apply_snapshot(
        subscription_id: str,
        snapshot: dict,
        effective_at: datetime,
    ) -> SubscriptionRecord:
        """Overwrite processor-owned fields from a processor snapshot.

        `snapshot` holds status, price_id, plan_type, period bounds,
        cancel_at_period_end and canceled_at. Stale snapshots are ignored;
        status changes still obey the transition rules.
        """
        def build(record: SubscriptionRecord) -> dict | None:
            if SubscriptionRepository._is_stale(record, effective_at):
                logger.info(
                    f"Ignoring stale snapshot for subscription {record.id} "
                    f"(effective {_iso(effective_at)}, last {_iso(record.last_event_at)})"
                )
                return None

            new_status = SubscriptionStatus(snapshot.get("status", record.status))
            cancel_flag = snapshot.get("cancel_at_period_end", record.cancel_at_period_end)
            if new_status == SubscriptionStatus.CANCELED:
                # A scheduled cancellation stays recorded once it completes
                cancel_flag = cancel_flag or record.cancel_at_period_end
            check_status_transition(record, new_status, effective_at, cancel_at_period_end=cancel_flag)

            start = snapshot.get("current_period_start") or record.current_period_start
            end = snapshot.get("current_period_end") or record.current_period_end
            if to_utc(end) <= to_utc(start):
                raise ValueError(f"Snapshot for subscription {record.id} has an empty billing period")

            changes = {
                "status": new_status.value,
                "cancel_at_period_end": cancel_flag,
                "current_period_start": _iso(start),
                "current_period_end": _iso(end),
                "last_event_at": SubscriptionRepository._stamp(record, effective_at),
            }
            if snapshot.get("price_id"):
                changes["price_id"] = snapshot["price_id"]
            if snapshot.get("plan_type"):
                changes["plan_type"] = PlanType(snapshot["plan_type"]).value
            if new_status == SubscriptionStatus.CANCELED and record.canceled_at is None:
                changes["canceled_at"] = _iso(snapshot.get("canceled_at") or effective_at)
            return changes

        return SubscriptionRepository.mutate(subscription_id, build)

    @staticmethod
    def set_cancel_at_period_end(
        subscription_id: str,
        reason: str | None,
        effective_at: datetime,
    ) -> SubscriptionRecord:
        """Schedule cancellation at period end. Status is left untouched."""
        def build(record: SubscriptionRecord) -> dict | None:
            if record.status == SubscriptionStatus.CANCELED:
                raise InvalidTransition(record.status.value, "cancel_at_period_end")
            if record.cancel_at_period_end and record.cancel_reason == reason:
                return None
            return {
                "cancel_at_period_end": True,
                "cancel_reason": reason,
                "last_event_at": SubscriptionRepository._stamp(record, effective_at),
            }

        return SubscriptionRepository.mutate(subscription_id, build)

    @staticmethod
    def update_payment_method(subscription_id: str, summary: PaymentMethodSummary) -> SubscriptionRecord:
        """Replace the display-only card summary."""
        def build(record: SubscriptionRecord) -> dict | None:
            if record.payment_method == summary:
                return None
            return {"payment_method": summary.model_dump()}

        return SubscriptionRepository.mutate(subscription_id, build)

    # ---- invoices ----------------------------------------------------

    @staticmethod
    @with_retry()
    def _get_invoice_row(subscription_id: str, invoice_id: str) -> dict | None:
        db = get_db()
        result = db.table("subscription_invoices").select("*").eq(
            "subscription_id", subscription_id
        ).eq("invoice_id", invoice_id).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def _update_invoice_row(row: dict, new_status: InvoiceStatus, paid_at: datetime | None) -> dict | None:
        """Forward the invoice status, conditional on the status we read."""
        db = get_db()
        changes = {"status": new_status.value}
        if new_status == InvoiceStatus.PAID:
            changes["paid_at"] = _iso(paid_at) if paid_at else row.get("paid_at")
        result = db.table("subscription_invoices").update(changes).eq(
            "id", row["id"]
        ).eq("status", row["status"]).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    def append_invoice(subscription_id: str, invoice: Invoice) -> Invoice:
        """Add an invoice line, idempotent on `invoice.id`.

        Replaying the same invoice is a no-op. A replay that carries a newer
        status forwards the stored line; one carrying an older status (an
        out-of-order delivery) is logged and the stored line is kept.
        """
        existing = SubscriptionRepository._get_invoice_row(subscription_id, invoice.id)
        if existing is None:
            db = get_db()
            data = {
                "subscription_id": subscription_id,
                "invoice_id": invoice.id,
                "amount": invoice.amount,
                "currency": invoice.currency,
                "status": invoice.status.value,
                "date": _iso(invoice.date),
                "paid_at": _iso(invoice.paid_at),
                "url": invoice.url,
            }
            try:
                result = db.table("subscription_invoices").insert(data).execute()
                return _invoice_from_row(result.data[0])
            except APIError as e:
                if e.code != UNIQUE_VIOLATION:
                    raise
                existing = SubscriptionRepository._get_invoice_row(subscription_id, invoice.id)
                if existing is None:
                    raise

        stored = InvoiceStatus(existing["status"])
        if stored == invoice.status:
            return _invoice_from_row(existing)
        try:
            return SubscriptionRepository.transition_invoice(
                subscription_id, invoice.id, invoice.status, paid_at=invoice.paid_at
            )
        except InvalidTransition:
            logger.warning(
                f"Invoice {invoice.id} on subscription {subscription_id}: ignoring status regression "
                f"{stored.value} -> {invoice.status.value}"
            )
            return _invoice_from_row(SubscriptionRepository._get_invoice_row(subscription_id, invoice.id))

    @staticmethod
    def transition_invoice(
        subscription_id: str,
        invoice_id: str,
        new_status: InvoiceStatus,
        paid_at: datetime | None = None,
    ) -> Invoice:
        """Move an invoice forward (open -> paid | void | uncollectible).

        Raises:
            SubscriptionNotFound: If the invoice line does not exist
            InvalidTransition: If the move goes backward or leaves a final state
            ConcurrentModification: If the line keeps changing underneath us
        """
        new_status = InvoiceStatus(new_status)
        for _ in range(MAX_WRITE_ATTEMPTS):
            row = SubscriptionRepository._get_invoice_row(subscription_id, invoice_id)
            if row is None:
                raise SubscriptionNotFound(f"Invoice {invoice_id} not found.")
            current = InvoiceStatus(row["status"])
            if current == new_status:
                return _invoice_from_row(row)
            check_invoice_transition(current, new_status)
            updated = SubscriptionRepository._update_invoice_row(row, new_status, paid_at)
            if updated is not None:
                return _invoice_from_row(updated)
        raise ConcurrentModification()

    # ---- reporting projections ---------------------------------------

    @staticmethod
    @with_retry()
    def _all_rows(table: str, columns: str = "*") -> list[dict]:
        db = get_db()
        result = db.table(table).select(columns).execute()
        return result.data if result and result.data else []

    @staticmethod
    def calculate_mrr() -> dict:
        """Monthly recurring revenue over active subscriptions, in minor units.

        Each subscription contributes its most recent paid invoice (annual
        amounts divided by 12); subscriptions with no paid invoice contribute 0.
        """
        subs = [
            s for s in SubscriptionRepository._all_rows("subscriptions")
            if s.get("status") == SubscriptionStatus.ACTIVE.value
        ]
        latest_paid: dict[str, dict] = {}
        for inv in SubscriptionRepository._all_rows("subscription_invoices"):
            if inv.get("status") != InvoiceStatus.PAID.value:
                continue
            sub_id = inv.get("subscription_id")
            prev = latest_paid.get(sub_id)
            if prev is None or str(inv.get("date") or "") > str(prev.get("date") or ""):
                latest_paid[sub_id] = inv

        plans: dict[str, dict] = {}
        for sub in subs:
            plan = sub.get("plan_type") or PlanType.MONTHLY.value
            amount = (latest_paid.get(sub["id"]) or {}).get("amount") or 0
            if plan == PlanType.ANNUAL.value:
                amount = amount / 12
            entry = plans.setdefault(plan, {"type": plan, "count": 0, "amount": 0.0})
            entry["count"] += 1
            entry["amount"] += amount

        return {
            "total_mrr": sum(p["amount"] for p in plans.values()),
            "total_subscriptions": sum(p["count"] for p in plans.values()),
            "plans": list(plans.values()),
        }

    @staticmethod
    def calculate_churn_rate(period_days: int = 30, now: datetime | None = None) -> dict:
        """Share of subscriptions alive at the window start that canceled inside it."""
        now = to_utc(now) if now is not None else datetime.now(timezone.utc)
        start = now - timedelta(days=period_days)

        def parse(value) -> datetime | None:
            if not value:
                return None
            if isinstance(value, datetime):
                return to_utc(value)
            return to_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))

        active_at_start = 0
        canceled_in_period = 0
        for sub in SubscriptionRepository._all_rows("subscriptions"):
            created_at = parse(sub.get("created_at"))
            if created_at is None or created_at >= start:
                continue
            canceled_at = parse(sub.get("canceled_at"))
            if sub.get("status") == SubscriptionStatus.CANCELED.value and canceled_at is not None:
                if canceled_at < start:
                    continue
                if canceled_at <= now:
                    canceled_in_period += 1
            active_at_start += 1

        return {
            "period_days": period_days,
            "active_at_start": active_at_start,
            "canceled_in_period": canceled_in_period,
            "churn_rate": (canceled_in_period / active_at_start) * 100 if active_at_start else 0.0,
        }

    @staticmethod
    @with_retry()
    def get_expiring(days_ahead: int = 7, now: datetime | None = None) -> list[SubscriptionRecord]:
        """Live subscriptions set to cancel whose period ends within `days_ahead`."""
        now = to_utc(now) if now is not None else datetime.now(timezone.utc)
        db = get_db()
        result = db.table("subscriptions").select("*").in_(
            "status", [s.value for s in LIVE_STATUSES]
        ).eq("cancel_at_period_end", True).gte(
            "current_period_end", _iso(now)
        ).lte("current_period_end", _iso(now + timedelta(days=days_ahead))).execute()
        return [SubscriptionRecord(**row) for row in (result.data if result and result.data else [])]
