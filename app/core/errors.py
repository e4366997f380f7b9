"""
Billing error taxonomy.

Every error is an HTTPException carrying a structured `detail` dict, so
services can raise them and routes let them propagate untouched:

- validation (400/402): rejected before anything reaches the store
- conflict (404/409): precondition violations, surfaced verbatim
- transient (503): retried at the boundary, surfaced once retries run out
- unknown outcome (504): the processor may or may not have applied the call
"""
from fastapi import HTTPException, status


class BillingError(HTTPException):
    """Base class for billing and access errors."""

    code = "BILLING_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST
    default_message = "Billing request could not be completed."

    def __init__(self, message: str | None = None, **extra):
        self.message = message or self.default_message
        super().__init__(
            status_code=self.http_status,
            detail={"code": self.code, "message": self.message, **extra},
        )

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# Validation

class InvalidPrice(BillingError):
    code = "INVALID_PRICE"
    default_message = "The selected plan is not available."


class PaymentMethodInvalid(BillingError):
    code = "PAYMENT_METHOD_INVALID"
    http_status = status.HTTP_402_PAYMENT_REQUIRED
    default_message = "Your payment method was declined. Please use a different card."


class ProcessorRejected(BillingError):
    code = "PROCESSOR_REJECTED"
    default_message = "The payment provider rejected the request."


# Conflict

class AlreadySubscribed(BillingError):
    code = "ALREADY_SUBSCRIBED"
    http_status = status.HTTP_409_CONFLICT
    default_message = "You already have an active subscription."


class NoActiveSubscription(BillingError):
    code = "NO_ACTIVE_SUBSCRIPTION"
    http_status = status.HTTP_404_NOT_FOUND
    default_message = "No active subscription found."


class NoBillingAccount(BillingError):
    code = "NO_BILLING_ACCOUNT"
    http_status = status.HTTP_404_NOT_FOUND
    default_message = "No billing account found. Subscribe to a plan first."


class SubscriptionNotFound(BillingError):
    code = "SUBSCRIPTION_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND
    default_message = "Subscription not found."


class InvalidTransition(BillingError):
    code = "INVALID_TRANSITION"
    http_status = status.HTTP_409_CONFLICT
    default_message = "That status change is not allowed."

    def __init__(self, current: str, requested: str, message: str | None = None):
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Cannot move from '{current}' to '{requested}'.",
            current=current,
            requested=requested,
        )


class ConcurrentModification(BillingError):
    code = "CONCURRENT_MODIFICATION"
    http_status = status.HTTP_409_CONFLICT
    default_message = "The subscription was modified concurrently. Please retry."


class BetaCodeInvalid(BillingError):
    code = "BETA_CODE_INVALID"
    default_message = "Invalid beta access code."


# Transient / unknown

class ProcessorUnavailable(BillingError):
    code = "PROCESSOR_UNAVAILABLE"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "The payment provider is temporarily unavailable. Please try again shortly."


class OutcomeUnknown(BillingError):
    code = "OUTCOME_UNKNOWN"
    http_status = status.HTTP_504_GATEWAY_TIMEOUT
    default_message = (
        "We couldn't confirm whether this went through. "
        "Please check your billing page in a few minutes before trying again."
    )


class EventNotReady(Exception):
    """A billing event references state that has not arrived yet.

    The event is released and the processor redelivers it later.
    """


class EventInProgress(Exception):
    """Another worker holds a fresh claim on this billing event.

    The delivery is refused so the processor retries once that worker
    has settled or abandoned it.
    """


# Access

class AccessDenied(BillingError):
    code = "ACCESS_DENIED"
    http_status = status.HTTP_403_FORBIDDEN
    default_message = "A subscription is required to access this feature."
