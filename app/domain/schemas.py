from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


# ============================================
# Enumerations
# ============================================

class PlanType(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    """Status of a Subscription Record, mirrored from the payment processor."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    UNPAID = "unpaid"
    TRIALING = "trialing"


# Statuses that count as "the" live subscription; at most one per user
LIVE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.TRIALING,
})


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


class AccessStatus(str, Enum):
    """User-facing subscription status derived from the user and their record."""
    BETA_ACCESS = "beta_access"
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    NONE = "none"


class ReasonCode(str, Enum):
    BETA_ACTIVE = "beta_active"
    BETA_GRACE = "beta_grace"
    BETA_EXPIRED = "beta_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE_GRACE = "past_due_grace"
    PAST_DUE_EXPIRED = "past_due_expired"
    CANCELED_BUT_PAID = "canceled_but_paid"
    CANCELED_EXPIRED = "canceled_expired"
    NO_SUBSCRIPTION = "no_subscription"


class CheckoutState(str, Enum):
    """States of a user-initiated checkout."""
    INITIATED = "initiated"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    ACTIVE = "active"
    FAILED = "failed"


# ============================================
# Subscription Record
# ============================================

class PaymentMethodSummary(BaseModel):
    """Last-known card summary. Display only."""
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None


class Invoice(BaseModel):
    id: str  # processor invoice id
    amount: int = 0  # minor units (cents)
    currency: str = "usd"
    status: InvoiceStatus
    date: datetime
    paid_at: Optional[datetime] = None
    url: Optional[str] = None


class SubscriptionRecord(BaseModel):
    id: str
    user_id: str
    external_subscription_id: str
    plan_type: PlanType
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    price_id: str
    payment_method: Optional[PaymentMethodSummary] = None
    invoices: list[Invoice] = []
    version: int = 1
    last_event_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _period_is_ordered(self):
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        return self

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES


# ============================================
# Access
# ============================================

class UserAccessState(BaseModel):
    """Snapshot the access decision is computed from.

    Built from the user row and their current Subscription Record; never stored
    as its own table.
    """
    subscription_status: AccessStatus = AccessStatus.NONE
    beta_expires_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


class AccessVerdict(BaseModel):
    has_access: bool
    reason_code: ReasonCode
    message: str
    message_type: str = "info"  # info | success | warning | error

    @property
    def degraded(self) -> bool:
        return self.reason_code in (ReasonCode.BETA_GRACE, ReasonCode.PAST_DUE_GRACE)


class CallToAction(BaseModel):
    path: str
    message: str
    blocking: bool


# ============================================
# Requests
# ============================================

class SubscriptionCreate(BaseModel):
    price_id: str = Field(..., min_length=1)
    payment_method_id: str = Field(..., min_length=1)


class SubscriptionCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentMethodUpdate(BaseModel):
    payment_method_id: str = Field(..., min_length=1)


class BetaCodeRedeem(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


# ============================================
# Responses
# ============================================

class SubscriptionSummary(BaseModel):
    plan_type: PlanType
    status: SubscriptionStatus
    price_id: str
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    payment_method: Optional[PaymentMethodSummary] = None


class SubscriptionDetailsResponse(BaseModel):
    subscription_status: AccessStatus
    beta_expires_at: Optional[datetime] = None
    access: AccessVerdict
    call_to_action: Optional[CallToAction] = None
    subscription: Optional[SubscriptionSummary] = None


class CheckoutResponse(BaseModel):
    state: CheckoutState
    subscription_id: Optional[str] = None
    client_secret: Optional[str] = None  # present when state == requires_confirmation
    subscription: Optional[SubscriptionSummary] = None


class CancelResponse(BaseModel):
    cancel_at_period_end: bool
    current_period_end: datetime
    access: AccessVerdict


class BillingPortalResponse(BaseModel):
    url: str


class InvoiceListResponse(BaseModel):
    invoices: list[Invoice]
    total_count: int


class BetaStatusResponse(BaseModel):
    is_beta: bool
    beta_expires_at: Optional[datetime] = None
    grace_ends_at: Optional[datetime] = None
    days_remaining: Optional[int] = None
    access: AccessVerdict


class PlanRevenue(BaseModel):
    type: PlanType
    count: int
    amount: float


class BillingMetricsResponse(BaseModel):
    total_mrr: float
    total_subscriptions: int
    plans: list[PlanRevenue]
    churn_period_days: int
    active_at_start: int
    canceled_in_period: int
    churn_rate: float
    expiring_soon: int
