"""Superadmin-only billing reporting routes."""

import logging

from fastapi import APIRouter, Depends, Query

from app.core.security import require_superadmin
from app.domain.schemas import BillingMetricsResponse
from app.repositories.subscription import SubscriptionRepository

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/billing/metrics", response_model=BillingMetricsResponse)
def get_billing_metrics(
    churn_days: int = Query(30, ge=1, le=365),
    expiring_days: int = Query(7, ge=1, le=90),
    _: dict = Depends(require_superadmin),
):
    """MRR, churn, and upcoming cancellations (superadmin only).

    Reporting convenience only: MRR assumes one invoice per billing period
    and normalizes annual plans by dividing by 12.
    """
    mrr = SubscriptionRepository.calculate_mrr()
    churn = SubscriptionRepository.calculate_churn_rate(period_days=churn_days)
    expiring = SubscriptionRepository.get_expiring(days_ahead=expiring_days)
    return BillingMetricsResponse(
        total_mrr=mrr["total_mrr"],
        total_subscriptions=mrr["total_subscriptions"],
        plans=mrr["plans"],
        churn_period_days=churn["period_days"],
        active_at_start=churn["active_at_start"],
        canceled_in_period=churn["canceled_in_period"],
        churn_rate=churn["churn_rate"],
        expiring_soon=len(expiring),
    )
