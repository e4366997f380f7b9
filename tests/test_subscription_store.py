"""
Unit tests for the subscription record store
"""
import logging
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import (
    AlreadySubscribed,
    ConcurrentModification,
    InvalidTransition,
    SubscriptionNotFound,
)
from app.domain.schemas import Invoice, InvoiceStatus, PlanType, SubscriptionStatus
from app.repositories.subscription import SubscriptionRepository
from tests.conftest import NOW


def invoice(invoice_id: str = "in_1", status: InvoiceStatus = InvoiceStatus.OPEN, amount: int = 1500, **fields):
    return Invoice(id=invoice_id, amount=amount, status=status, date=fields.pop("date", NOW), **fields)


class TestCreate:

    def test_create_and_read_back(self, make_record):
        created = make_record()

        fetched = SubscriptionRepository.get_by_external_id(created.external_subscription_id)

        assert fetched == created
        assert fetched.version == 1
        assert fetched.payment_method.last4 == "4242"

    def test_create_is_idempotent_on_external_id(self, make_record, db):
        first = make_record(external_id="sub_same")
        second = make_record(external_id="sub_same")

        assert first.id == second.id
        assert len(db.rows("subscriptions")) == 1

    def test_second_live_record_is_rejected(self, make_record):
        make_record(status=SubscriptionStatus.ACTIVE)

        with pytest.raises(AlreadySubscribed):
            make_record(status=SubscriptionStatus.PAST_DUE)

    def test_empty_period_is_rejected(self, make_record):
        with pytest.raises(ValueError):
            make_record(start=NOW, end=NOW)


class TestActiveRecord:

    def test_none_without_records(self, user, db):
        assert SubscriptionRepository.get_active_for_user(user["id"], now=NOW) is None

    def test_canceled_in_period_counts(self, make_record, user):
        rec = make_record(status=SubscriptionStatus.CANCELED, end=NOW + timedelta(days=2))

        assert SubscriptionRepository.get_active_for_user(user["id"], now=NOW).id == rec.id
        assert SubscriptionRepository.get_active_for_user(user["id"], now=NOW + timedelta(days=3)) is None

    def test_unpaid_is_not_active(self, make_record, user):
        make_record(status=SubscriptionStatus.UNPAID)

        assert SubscriptionRepository.get_active_for_user(user["id"], now=NOW) is None
        assert SubscriptionRepository.get_latest_for_user(user["id"]).status == SubscriptionStatus.UNPAID

    def test_duplicate_live_records_pick_latest_and_log(self, make_record, user, db, caplog):
        """Inconsistent data is surfaced, not merged"""
        older = make_record(end=NOW + timedelta(days=5))
        # Bypass the partial unique index to simulate a race that slipped through
        newer_row = dict(db.rows("subscriptions")[0])
        newer_row.update({
            "id": "rec-newer",
            "external_subscription_id": "sub_newer",
            "current_period_end": (NOW + timedelta(days=25)).isoformat(),
        })
        db.tables["subscriptions"].append(newer_row)

        with caplog.at_level(logging.WARNING):
            active = SubscriptionRepository.get_active_for_user(user["id"], now=NOW)

        assert active.id == "rec-newer"
        assert active.id != older.id
        assert "Invariant violation" in caplog.text


class TestStatusTransitions:

    def test_forward_transition_bumps_version(self, make_record):
        rec = make_record()

        updated = SubscriptionRepository.apply_status_transition(rec.id, SubscriptionStatus.PAST_DUE, NOW)

        assert updated.status == SubscriptionStatus.PAST_DUE
        assert updated.version == rec.version + 1
        assert updated.last_event_at == NOW

    def test_canceled_is_terminal(self, make_record):
        rec = make_record(status=SubscriptionStatus.CANCELED)

        with pytest.raises(InvalidTransition):
            SubscriptionRepository.apply_status_transition(rec.id, SubscriptionStatus.ACTIVE, NOW)

    def test_cancel_sets_canceled_at(self, make_record):
        rec = make_record()

        updated = SubscriptionRepository.apply_status_transition(rec.id, SubscriptionStatus.CANCELED, NOW)

        assert updated.canceled_at == NOW

    def test_stale_transition_is_ignored(self, make_record):
        rec = make_record(last_event_at=NOW)

        result = SubscriptionRepository.apply_status_transition(
            rec.id, SubscriptionStatus.PAST_DUE, NOW - timedelta(minutes=5)
        )

        assert result.status == SubscriptionStatus.ACTIVE
        assert result.version == rec.version

    def test_scheduled_cancel_cannot_end_early(self, make_record):
        """Cancel-at-period-end keeps the record active until the boundary"""
        period_end = NOW + timedelta(days=5)
        rec = make_record(end=period_end)
        SubscriptionRepository.set_cancel_at_period_end(rec.id, "too expensive", NOW)

        with pytest.raises(InvalidTransition):
            SubscriptionRepository.apply_status_transition(rec.id, SubscriptionStatus.CANCELED, NOW)

        ended = SubscriptionRepository.apply_status_transition(rec.id, SubscriptionStatus.CANCELED, period_end)
        assert ended.status == SubscriptionStatus.CANCELED
        assert ended.cancel_at_period_end is True

    def test_snapshot_cannot_lift_schedule_to_end_early(self, make_record):
        """A processor snapshot canceling now with the schedule cleared is still refused"""
        period_end = NOW + timedelta(days=5)
        rec = make_record(end=period_end)
        SubscriptionRepository.set_cancel_at_period_end(rec.id, "too expensive", NOW)

        with pytest.raises(InvalidTransition):
            SubscriptionRepository.apply_snapshot(
                rec.id,
                {"status": SubscriptionStatus.CANCELED, "cancel_at_period_end": False},
                NOW + timedelta(minutes=1),
            )

        unchanged = SubscriptionRepository.get_by_id(rec.id)
        assert unchanged.status == SubscriptionStatus.ACTIVE
        assert unchanged.cancel_at_period_end is True

    def test_unknown_record(self, db):
        with pytest.raises(SubscriptionNotFound):
            SubscriptionRepository.apply_status_transition("missing", SubscriptionStatus.ACTIVE, NOW)

    def test_lost_race_rereads_and_retries(self, make_record, monkeypatch, db):
        rec = make_record()
        original = SubscriptionRepository._write_versioned
        raced = {"done": False}

        def racing_write(record, changes):
            if not raced["done"]:
                raced["done"] = True
                # Another writer lands first
                row = db.rows("subscriptions")[0]
                row["version"] += 1
                row["cancel_at_period_end"] = True
            return original(record, changes)

        monkeypatch.setattr(SubscriptionRepository, "_write_versioned", staticmethod(racing_write))

        updated = SubscriptionRepository.apply_status_transition(rec.id, SubscriptionStatus.PAST_DUE, NOW)

        assert updated.status == SubscriptionStatus.PAST_DUE
        assert updated.cancel_at_period_end is True
        assert updated.version == rec.version + 2

    def test_gives_up_after_repeated_conflicts(self, make_record, monkeypatch):
        rec = make_record()
        monkeypatch.setattr(SubscriptionRepository, "_write_versioned", staticmethod(lambda record, changes: None))

        with pytest.raises(ConcurrentModification):
            SubscriptionRepository.apply_status_transition(rec.id, SubscriptionStatus.PAST_DUE, NOW)


class TestCancelSchedule:

    def test_schedule_keeps_status(self, make_record):
        rec = make_record()

        updated = SubscriptionRepository.set_cancel_at_period_end(rec.id, "switching tools", NOW)

        assert updated.status == SubscriptionStatus.ACTIVE
        assert updated.cancel_at_period_end is True
        assert updated.cancel_reason == "switching tools"

    def test_schedule_on_canceled_record_rejected(self, make_record):
        rec = make_record(status=SubscriptionStatus.CANCELED)

        with pytest.raises(InvalidTransition):
            SubscriptionRepository.set_cancel_at_period_end(rec.id, None, NOW)


class TestInvoices:

    def test_append_is_idempotent(self, make_record, db):
        rec = make_record()

        SubscriptionRepository.append_invoice(rec.id, invoice())
        SubscriptionRepository.append_invoice(rec.id, invoice())

        assert len(db.rows("subscription_invoices")) == 1

    def test_replay_with_newer_status_moves_forward(self, make_record):
        rec = make_record()
        SubscriptionRepository.append_invoice(rec.id, invoice())

        paid = SubscriptionRepository.append_invoice(
            rec.id, invoice(status=InvoiceStatus.PAID, paid_at=NOW + timedelta(hours=1))
        )

        assert paid.status == InvoiceStatus.PAID
        assert paid.paid_at == NOW + timedelta(hours=1)

    def test_replay_with_older_status_is_ignored(self, make_record, caplog):
        rec = make_record()
        SubscriptionRepository.append_invoice(rec.id, invoice(status=InvoiceStatus.PAID))

        with caplog.at_level(logging.WARNING):
            kept = SubscriptionRepository.append_invoice(rec.id, invoice(status=InvoiceStatus.OPEN))

        assert kept.status == InvoiceStatus.PAID
        assert "regression" in caplog.text

    def test_paid_cannot_reopen(self, make_record):
        rec = make_record()
        SubscriptionRepository.append_invoice(rec.id, invoice())
        SubscriptionRepository.transition_invoice(rec.id, "in_1", InvoiceStatus.PAID)

        with pytest.raises(InvalidTransition):
            SubscriptionRepository.transition_invoice(rec.id, "in_1", InvoiceStatus.OPEN)

    def test_open_paid_void_rejected_at_void(self, make_record):
        rec = make_record()
        SubscriptionRepository.append_invoice(rec.id, invoice())
        SubscriptionRepository.transition_invoice(rec.id, "in_1", InvoiceStatus.PAID)

        with pytest.raises(InvalidTransition):
            SubscriptionRepository.transition_invoice(rec.id, "in_1", InvoiceStatus.VOID)

    def test_transition_unknown_invoice(self, make_record):
        rec = make_record()

        with pytest.raises(SubscriptionNotFound):
            SubscriptionRepository.transition_invoice(rec.id, "in_missing", InvoiceStatus.PAID)

    def test_history_across_records(self, make_record, user):
        old = make_record(
            status=SubscriptionStatus.CANCELED,
            start=NOW - timedelta(days=70),
            end=NOW - timedelta(days=40),
        )
        current = make_record()
        SubscriptionRepository.append_invoice(old.id, invoice("in_old", date=NOW - timedelta(days=60)))
        SubscriptionRepository.append_invoice(current.id, invoice("in_new", date=NOW))

        history = SubscriptionRepository.list_invoices_for_user(user["id"])

        assert [i.id for i in history] == ["in_new", "in_old"]

    def test_get_with_invoices(self, make_record):
        rec = make_record()
        SubscriptionRepository.append_invoice(rec.id, invoice())

        loaded = SubscriptionRepository.get_with_invoices(rec.id)

        assert [i.id for i in loaded.invoices] == ["in_1"]


class TestReporting:

    def test_mrr_without_invoices_is_zero(self, make_record):
        make_record()

        mrr = SubscriptionRepository.calculate_mrr()

        assert mrr["total_mrr"] == 0
        assert mrr["total_subscriptions"] == 1

    def test_mrr_normalizes_annual_plans(self, make_record, db):
        monthly = make_record()
        annual = make_record(plan_type=PlanType.ANNUAL, user_id="user-2")
        SubscriptionRepository.append_invoice(monthly.id, invoice("in_m", status=InvoiceStatus.PAID, amount=1500))
        SubscriptionRepository.append_invoice(annual.id, invoice("in_a", status=InvoiceStatus.PAID, amount=12000))

        mrr = SubscriptionRepository.calculate_mrr()

        assert mrr["total_mrr"] == 2500
        assert {p["type"] for p in mrr["plans"]} == {"monthly", "annual"}

    def test_churn_tolerates_missing_dates(self, make_record, db):
        make_record()
        db.rows("subscriptions")[0]["created_at"] = None

        churn = SubscriptionRepository.calculate_churn_rate(30, now=NOW)

        assert churn["churn_rate"] == 0.0
        assert churn["active_at_start"] == 0

    def test_churn_counts_cancellations_in_window(self, make_record, db):
        rec = make_record()
        make_record(user_id="user-2")
        for row in db.rows("subscriptions"):
            row["created_at"] = (NOW - timedelta(days=90)).isoformat()
        SubscriptionRepository.apply_status_transition(rec.id, SubscriptionStatus.CANCELED, NOW - timedelta(days=3))

        churn = SubscriptionRepository.calculate_churn_rate(30, now=NOW)

        assert churn["active_at_start"] == 2
        assert churn["canceled_in_period"] == 1
        assert churn["churn_rate"] == 50.0

    def test_expiring_soon(self, make_record):
        rec = make_record(end=NOW + timedelta(days=3))
        SubscriptionRepository.set_cancel_at_period_end(rec.id, None, NOW)

        expiring = SubscriptionRepository.get_expiring(7, now=NOW)

        assert [r.id for r in expiring] == [rec.id]
        assert SubscriptionRepository.get_expiring(1, now=NOW) == []
