"""
Ledger of processed billing events.

Claiming an event id is the de-duplication check: the insert either wins
the primary key or fails, so two concurrent deliveries of the same event
can never both proceed to apply it.

A claim starts in `processing` and moves to `applied` once the event has
been applied. A `processing` claim older than STALE_CLAIM_AFTER belongs to
a worker that died mid-apply and may be taken over by a redelivery.
"""
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum

from postgrest.exceptions import APIError

from app.core.access import to_utc
from database.connection import get_db, with_retry

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

STATE_PROCESSING = "processing"
STATE_APPLIED = "applied"

STALE_CLAIM_AFTER = timedelta(minutes=5)


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"


class BillingEventRepository:

    @staticmethod
    @with_retry()
    def claim(event_id: str, event_type: str, effective_at: datetime, now: datetime | None = None) -> ClaimResult:
        """Claim an event for processing.

        Returns:
            CLAIMED if this caller owns the event, DUPLICATE if it was already
            applied, IN_PROGRESS if another worker holds a fresh claim
        """
        now = to_utc(now or datetime.now(timezone.utc))
        db = get_db()
        try:
            db.table("billing_events").insert({
                "event_id": event_id,
                "event_type": event_type,
                "effective_at": to_utc(effective_at).isoformat(),
                "state": STATE_PROCESSING,
                "claimed_at": now.isoformat(),
            }).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                return BillingEventRepository._reclaim(event_id, now)
            raise
        return ClaimResult.CLAIMED

    @staticmethod
    def _reclaim(event_id: str, now: datetime) -> ClaimResult:
        db = get_db()
        result = db.table("billing_events").select("state, claimed_at").eq(
            "event_id", event_id
        ).limit(1).execute()
        if not result or not result.data:
            # Released between our insert and this read
            return ClaimResult.IN_PROGRESS

        row = result.data[0]
        if row.get("state") == STATE_APPLIED:
            return ClaimResult.DUPLICATE

        claimed_at = row.get("claimed_at")
        if claimed_at and now - to_utc(datetime.fromisoformat(claimed_at)) < STALE_CLAIM_AFTER:
            return ClaimResult.IN_PROGRESS

        # Take over only if nobody else refreshed the claim first
        query = db.table("billing_events").update({"claimed_at": now.isoformat()}).eq(
            "event_id", event_id
        ).eq("state", STATE_PROCESSING)
        if claimed_at:
            query = query.eq("claimed_at", claimed_at)
        taken = query.execute()
        if not taken or not taken.data:
            return ClaimResult.IN_PROGRESS

        logger.warning(f"Reclaimed billing event {event_id} abandoned since {claimed_at}")
        return ClaimResult.CLAIMED

    @staticmethod
    @with_retry()
    def mark_applied(event_id: str) -> None:
        """Settle a claim; later deliveries of the event are duplicates."""
        db = get_db()
        db.table("billing_events").update({
            "state": STATE_APPLIED,
            "applied_at": datetime.now(timezone.utc).isoformat(),
        }).eq("event_id", event_id).execute()

    @staticmethod
    @with_retry()
    def release(event_id: str) -> None:
        """Drop a claim so a redelivery of the event is processed again."""
        db = get_db()
        db.table("billing_events").delete().eq("event_id", event_id).execute()

    @staticmethod
    @with_retry()
    def get_state(event_id: str) -> str | None:
        db = get_db()
        result = db.table("billing_events").select("state").eq(
            "event_id", event_id
        ).limit(1).execute()
        return result.data[0].get("state") if result and result.data else None

    @staticmethod
    @with_retry()
    def exists(event_id: str) -> bool:
        db = get_db()
        result = db.table("billing_events").select("event_id").eq(
            "event_id", event_id
        ).limit(1).execute()
        return bool(result and result.data)
