"""
Route guard for subscription-gated routes.

Uses the same dependency injection pattern as the auth dependencies:
gated routes add `Depends(require_access)` and only run when the access
decision engine grants access. The verdict, never raw status fields, drives
both the 403 and the call-to-action the client shows.

Usage:
    @router.post("/sessions")
    def start_session(verdict: AccessVerdict = Depends(require_access)):
        if verdict.degraded:
            ...  # show the grace-period banner
"""
import logging
from datetime import datetime

from fastapi import Depends

from app.core.permissions import get_current_user_profile
from app.core.access import build_access_state, decide_access
from app.core.errors import AccessDenied
from app.domain.schemas import (
    AccessVerdict,
    CallToAction,
    ReasonCode,
    UserAccessState,
)
from app.repositories.subscription import SubscriptionRepository
from app.services import access_cache

logger = logging.getLogger(__name__)

# Where the client sends the user for each reason code. The web client's
# route guard mirrors this table.
CALLS_TO_ACTION: dict[ReasonCode, CallToAction] = {
    ReasonCode.BETA_GRACE: CallToAction(
        path="/beta-conversion",
        message="Your beta access has ended. Subscribe now to keep writing.",
        blocking=False,
    ),
    ReasonCode.BETA_EXPIRED: CallToAction(
        path="/beta-conversion",
        message="Your beta access has expired. Please subscribe to continue using Writelikeyou.",
        blocking=True,
    ),
    ReasonCode.PAST_DUE_GRACE: CallToAction(
        path="/account/billing",
        message="Your payment is past due. Please update your payment method.",
        blocking=False,
    ),
    ReasonCode.PAST_DUE_EXPIRED: CallToAction(
        path="/account/billing",
        message="Your payment failed. Update your payment method to continue.",
        blocking=True,
    ),
    ReasonCode.CANCELED_EXPIRED: CallToAction(
        path="/account/billing",
        message="Your subscription has been canceled. Please resubscribe to continue.",
        blocking=True,
    ),
    ReasonCode.NO_SUBSCRIPTION: CallToAction(
        path="/pricing",
        message="A subscription is required to access this feature.",
        blocking=True,
    ),
}


def call_to_action(verdict: AccessVerdict) -> CallToAction | None:
    """Banner or redirect for a verdict; None when nothing needs the user's attention."""
    return CALLS_TO_ACTION.get(verdict.reason_code)


def load_access_state(user: dict, use_cache: bool = True) -> UserAccessState:
    """Build (or fetch from cache) the access snapshot for a user row."""
    if use_cache:
        cached = access_cache.get_cached_state(user["id"])
        if cached is not None:
            return cached

    record = SubscriptionRepository.get_active_for_user(user["id"])
    if record is None:
        # Fall back to the last record so a lapsed subscriber is not mistaken for a beta user
        record = SubscriptionRepository.get_latest_for_user(user["id"])
    state = build_access_state(user, record)

    if use_cache:
        access_cache.cache_state(user["id"], state)
    return state


def evaluate_access(user: dict, now: datetime | None = None) -> AccessVerdict:
    return decide_access(load_access_state(user), now)


def get_access_verdict(user: dict = Depends(get_current_user_profile)) -> AccessVerdict:
    """Dependency returning the caller's verdict without enforcing it."""
    return evaluate_access(user)


def require_access(verdict: AccessVerdict = Depends(get_access_verdict)) -> AccessVerdict:
    """Dependency that rejects callers without access.

    Raises:
        AccessDenied: 403 carrying the reason code and call-to-action
    """
    if not verdict.has_access:
        cta = call_to_action(verdict)
        logger.info(f"Access denied: {verdict.reason_code.value}")
        raise AccessDenied(
            cta.message if cta else verdict.message,
            reason_code=verdict.reason_code.value,
            redirect_to=cta.path if cta else "/pricing",
        )
    return verdict
