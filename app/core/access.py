"""
Access decision engine.

Single source of truth for whether a user may use the product right now.
Every API route guard and the client route guard consume `decide_access`;
nothing else should compare subscription status strings.

The client route guard must mirror this table and stay behaviorally
identical.
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.domain.schemas import (
    AccessStatus,
    AccessVerdict,
    ReasonCode,
    SubscriptionRecord,
    SubscriptionStatus,
    UserAccessState,
)

# Fixed 7x24h window, applied in UTC so DST never stretches or shrinks it
GRACE_PERIOD = timedelta(days=7)

_DAY_SECONDS = 24 * 60 * 60

RECORD_STATUS_TO_ACCESS: dict[SubscriptionStatus, AccessStatus] = {
    SubscriptionStatus.TRIALING: AccessStatus.TRIAL,
    SubscriptionStatus.ACTIVE: AccessStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE: AccessStatus.PAST_DUE,
    SubscriptionStatus.CANCELED: AccessStatus.CANCELED,
    SubscriptionStatus.INCOMPLETE: AccessStatus.UNPAID,
    SubscriptionStatus.UNPAID: AccessStatus.UNPAID,
}


def to_utc(value: datetime) -> datetime:
    """Normalize a timestamp to aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def grace_deadline(boundary: datetime) -> datetime:
    return to_utc(boundary) + GRACE_PERIOD


def _days_until(moment: datetime, now: datetime) -> int:
    return math.ceil((moment - now).total_seconds() / _DAY_SECONDS)


def _fmt_date(value: datetime) -> str:
    return value.strftime("%B %d, %Y")


def _verdict(has_access: bool, reason: ReasonCode, message: str, message_type: str) -> AccessVerdict:
    return AccessVerdict(
        has_access=has_access,
        reason_code=reason,
        message=message,
        message_type=message_type,
    )


def _decide_beta(expires_at: Optional[datetime], now: datetime) -> AccessVerdict:
    if expires_at is None:
        return _verdict(False, ReasonCode.BETA_EXPIRED, "Beta access has no expiration date on file", "error")

    expires_at = to_utc(expires_at)
    if now <= expires_at:
        days = _days_until(expires_at, now)
        if days > 30:
            return _verdict(True, ReasonCode.BETA_ACTIVE, f"Beta access valid until {_fmt_date(expires_at)}", "info")
        return _verdict(True, ReasonCode.BETA_ACTIVE, f"Beta access expires in {days} days", "warning")

    grace_end = grace_deadline(expires_at)
    if now <= grace_end:
        days = _days_until(grace_end, now)
        return _verdict(
            True,
            ReasonCode.BETA_GRACE,
            f"Beta access has ended. Subscribe within {days} days to keep writing.",
            "warning",
        )
    return _verdict(False, ReasonCode.BETA_EXPIRED, "Beta access has expired", "error")


def _decide_past_due(period_end: Optional[datetime], now: datetime) -> AccessVerdict:
    if period_end is not None and now <= grace_deadline(period_end):
        return _verdict(
            True,
            ReasonCode.PAST_DUE_GRACE,
            "Payment past due. Please update your payment method.",
            "warning",
        )
    return _verdict(
        False,
        ReasonCode.PAST_DUE_EXPIRED,
        "Your payment failed and the grace period has ended. Update your payment method to continue.",
        "error",
    )


def _decide_canceled(period_end: Optional[datetime], now: datetime) -> AccessVerdict:
    if period_end is not None and now <= to_utc(period_end):
        period_end = to_utc(period_end)
        days = _days_until(period_end, now)
        return _verdict(
            True,
            ReasonCode.CANCELED_BUT_PAID,
            f"Your subscription has been canceled but you have access until "
            f"{_fmt_date(period_end)} ({days} days remaining)",
            "warning",
        )
    return _verdict(False, ReasonCode.CANCELED_EXPIRED, "Your subscription has been canceled", "error")


def _decide_active(state: UserAccessState, now: datetime) -> AccessVerdict:
    if state.current_period_end is None:
        return _verdict(True, ReasonCode.ACTIVE, "Active subscription", "success")

    period_end = to_utc(state.current_period_end)
    days = max(_days_until(period_end, now), 0)
    if state.cancel_at_period_end:
        return _verdict(
            True,
            ReasonCode.ACTIVE,
            f"Active subscription, ends on {_fmt_date(period_end)}",
            "warning",
        )
    return _verdict(True, ReasonCode.ACTIVE, f"Active subscription, renews in {days} days", "success")


def decide_access(state: Optional[UserAccessState], now: Optional[datetime] = None) -> AccessVerdict:
    """Decide whether the user described by `state` has access at `now`.

    Pure: the result depends only on the arguments. Rules are evaluated in
    order and the first match wins. Grace windows (beta_grace,
    past_due_grace) grant degraded access; callers that need to show a
    banner must inspect `reason_code`, not only `has_access`.

    Args:
        state: Access snapshot, or None when the user has no billing state
        now: Evaluation time (defaults to the current UTC time)

    Returns:
        AccessVerdict with has_access, reason_code and a display message
    """
    now = to_utc(now) if now is not None else datetime.now(timezone.utc)
    status = state.subscription_status if state is not None else AccessStatus.NONE

    if status == AccessStatus.BETA_ACCESS:
        return _decide_beta(state.beta_expires_at, now)
    if status == AccessStatus.TRIAL:
        return _verdict(True, ReasonCode.TRIALING, "You are on a trial subscription", "info")
    if status == AccessStatus.ACTIVE:
        return _decide_active(state, now)
    if status == AccessStatus.PAST_DUE:
        return _decide_past_due(state.current_period_end, now)
    if status == AccessStatus.CANCELED:
        return _decide_canceled(state.current_period_end, now)
    if status == AccessStatus.UNPAID:
        return _verdict(
            False,
            ReasonCode.NO_SUBSCRIPTION,
            "Your subscription is inactive due to payment failure",
            "error",
        )
    return _verdict(False, ReasonCode.NO_SUBSCRIPTION, "No active subscription", "error")


def build_access_state(user: Optional[dict], record: Optional[SubscriptionRecord]) -> UserAccessState:
    """Derive the access snapshot from a user row and their current record.

    A Subscription Record, once one exists, always governs access; the beta
    window only applies to users who never converted. A checkout still
    awaiting confirmation is not a conversion.
    """
    beta_expires_at = user.get("beta_expires_at") if user else None
    pending = record is not None and record.status == SubscriptionStatus.INCOMPLETE

    if record is not None and not (pending and beta_expires_at):
        return UserAccessState(
            subscription_status=RECORD_STATUS_TO_ACCESS[record.status],
            current_period_end=record.current_period_end,
            cancel_at_period_end=record.cancel_at_period_end,
        )

    if beta_expires_at:
        return UserAccessState(
            subscription_status=AccessStatus.BETA_ACCESS,
            beta_expires_at=beta_expires_at,
        )

    return UserAccessState(subscription_status=AccessStatus.NONE)
