from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from app.api.deps import get_billing_service
from app.core.permissions import get_current_user_profile
from app.core.access import decide_access, grace_deadline, to_utc
from app.core.entitlements import call_to_action, get_access_verdict, load_access_state
from app.domain.schemas import (
    AccessStatus,
    AccessVerdict,
    BetaCodeRedeem,
    BetaStatusResponse,
    BillingPortalResponse,
    CancelResponse,
    CheckoutResponse,
    InvoiceListResponse,
    PaymentMethodSummary,
    PaymentMethodUpdate,
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionDetailsResponse,
    SubscriptionRecord,
    SubscriptionSummary,
)
from app.repositories.subscription import SubscriptionRepository
from app.services.billing import BillingService, CheckoutResult

router = APIRouter()


def _summary(record: SubscriptionRecord | None) -> SubscriptionSummary | None:
    if record is None:
        return None
    return SubscriptionSummary(
        plan_type=record.plan_type,
        status=record.status,
        price_id=record.price_id,
        current_period_end=record.current_period_end,
        cancel_at_period_end=record.cancel_at_period_end,
        canceled_at=record.canceled_at,
        payment_method=record.payment_method,
    )


def _checkout_response(result: CheckoutResult) -> CheckoutResponse:
    return CheckoutResponse(
        state=result.state,
        subscription_id=result.external_subscription_id,
        client_secret=result.client_secret,
        subscription=_summary(result.record),
    )


@router.get("/details", response_model=SubscriptionDetailsResponse)
def get_subscription_details(user: dict = Depends(get_current_user_profile)):
    """Current access state, verdict, and a display summary of the subscription."""
    record = SubscriptionRepository.get_active_for_user(user["id"])
    if record is None:
        record = SubscriptionRepository.get_latest_for_user(user["id"])
    state = load_access_state(user)
    verdict = decide_access(state)
    return SubscriptionDetailsResponse(
        subscription_status=state.subscription_status,
        beta_expires_at=state.beta_expires_at,
        access=verdict,
        call_to_action=call_to_action(verdict),
        subscription=_summary(record),
    )


@router.get("/access", response_model=AccessVerdict)
def get_access(verdict: AccessVerdict = Depends(get_access_verdict)):
    """Verdict for the client route guard to cache until the next billing change."""
    return verdict


@router.post("/create", response_model=CheckoutResponse)
def create_subscription(
    data: SubscriptionCreate,
    user: dict = Depends(get_current_user_profile),
    billing: BillingService = Depends(get_billing_service),
):
    """Start a subscription. May require client-side payment confirmation."""
    result = billing.create_subscription(user, data.price_id, data.payment_method_id)
    return _checkout_response(result)


@router.post("/confirm", response_model=CheckoutResponse)
def confirm_subscription(
    user: dict = Depends(get_current_user_profile),
    billing: BillingService = Depends(get_billing_service),
):
    """Resolve a checkout after the browser completed payment authentication."""
    return _checkout_response(billing.confirm_subscription(user))


@router.post("/cancel", response_model=CancelResponse)
def cancel_subscription(
    data: SubscriptionCancel | None = None,
    user: dict = Depends(get_current_user_profile),
    billing: BillingService = Depends(get_billing_service),
):
    """Cancel at period end. Access continues until the paid period is over."""
    record = billing.cancel_subscription(user, reason=data.reason if data else None)
    return CancelResponse(
        cancel_at_period_end=record.cancel_at_period_end,
        current_period_end=record.current_period_end,
        access=decide_access(load_access_state(user, use_cache=False)),
    )


@router.post("/update-payment-method", response_model=PaymentMethodSummary)
def update_payment_method(
    data: PaymentMethodUpdate,
    user: dict = Depends(get_current_user_profile),
    billing: BillingService = Depends(get_billing_service),
):
    return billing.update_payment_method(user, data.payment_method_id)


@router.get("/billing-portal", response_model=BillingPortalResponse)
def open_billing_portal(
    user: dict = Depends(get_current_user_profile),
    billing: BillingService = Depends(get_billing_service),
):
    """Hosted billing-management session URL."""
    return BillingPortalResponse(url=billing.open_billing_portal(user))


@router.get("/invoices", response_model=InvoiceListResponse)
def list_invoices(user: dict = Depends(get_current_user_profile)):
    """Invoice history across all of the user's subscriptions, newest first."""
    invoices = SubscriptionRepository.list_invoices_for_user(user["id"])
    return InvoiceListResponse(invoices=invoices, total_count=len(invoices))


def _beta_status(user: dict) -> BetaStatusResponse:
    state = load_access_state(user)
    verdict = decide_access(state)
    if state.subscription_status != AccessStatus.BETA_ACCESS or state.beta_expires_at is None:
        return BetaStatusResponse(is_beta=False, access=verdict)

    expires_at = to_utc(state.beta_expires_at)
    seconds_left = (expires_at - datetime.now(timezone.utc)).total_seconds()
    return BetaStatusResponse(
        is_beta=True,
        beta_expires_at=expires_at,
        grace_ends_at=grace_deadline(expires_at),
        days_remaining=max(int(-(-seconds_left // 86400)), 0),
        access=verdict,
    )


@router.get("/beta-status", response_model=BetaStatusResponse)
def get_beta_status(user: dict = Depends(get_current_user_profile)):
    return _beta_status(user)


@router.post("/beta-code", response_model=BetaStatusResponse)
def redeem_beta_code(
    data: BetaCodeRedeem,
    user: dict = Depends(get_current_user_profile),
    billing: BillingService = Depends(get_billing_service),
):
    """Redeem a beta access code for a user who has not subscribed yet."""
    updated = billing.redeem_beta_code(user, data.code)
    return _beta_status(updated)
