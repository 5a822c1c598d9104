"""
Domain exceptions raised by billing services.

Routers translate these into HTTP responses; anything else escaping a
service is treated as an internal error.
"""

from typing import Optional

from fastapi import HTTPException


class BillingError(Exception):
    """Base class for billing domain errors."""

    status_code: int = 400
    error_code: str = "BILLING_000"

    def __init__(self, message: str, *, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_http(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail=self.message,
            headers={"X-Error-Code": self.error_code}
        )


class InvalidPlanError(BillingError, ValueError):
    """Unknown plan key or a price id with no role mapping."""

    error_code = "BILLING_001"


class UserNotFoundError(BillingError, LookupError):
    """The user (or their auth record) does not exist."""

    status_code = 404
    error_code = "BILLING_002"


class NoActiveSubscriptionError(BillingError):
    """An operation needs a subscription the customer does not have."""

    error_code = "BILLING_003"


class CheckoutSessionNotFoundError(BillingError, LookupError):
    """Stripe has no checkout session with the given id."""

    status_code = 404
    error_code = "BILLING_004"


class WebhookSignatureError(BillingError):
    """The Stripe-Signature header did not verify against the payload."""

    error_code = "WEBHOOK_001"
