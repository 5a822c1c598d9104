"""
Billing models.

Provides Pydantic schemas for:
- Database records (user roles, auth users, payments)
- Results of role reconciliation and webhook processing
- Billing API requests and responses

Request and response fields use the camelCase names the web client already
sends and reads (``sessionId``, ``isYearly``); Python code uses snake_case.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from api.src.models.plans import Role


class CamelModel(BaseModel):
    """Base for wire models that accept both alias and field names."""
    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# Database Records
# ============================================================================


class UserRoleRecord(BaseModel):
    """Row of ``public.user_roles``."""
    user_id: UUID
    role: str
    email: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuthUser(BaseModel):
    """Subset of ``auth.users`` used for email and metadata sync."""
    id: UUID
    email: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Service Results
# ============================================================================


class RoleUpdateResult(BaseModel):
    """Outcome of writing a role for a user."""
    user_id: UUID
    role: Role
    previous_role: Optional[str] = None
    created: bool = False
    verified: bool = False


class ResolvedUser(BaseModel):
    """A user located for a subscription and the strategy that found them."""
    user_id: UUID
    strategy: str


class WebhookResult(BaseModel):
    """
    Body returned to Stripe for a processed event.

    ``http_status`` is not serialized; it selects the response status code.
    """
    received: bool = True
    event_type: Optional[str] = None
    status: str = "OK"
    message: Optional[str] = None
    error: Optional[str] = None
    http_status: int = Field(default=200, exclude=True)

    def body(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ============================================================================
# Checkout
# ============================================================================


class CheckoutRequest(CamelModel):
    """Start a subscription checkout for the current user."""
    plan: str = Field(..., min_length=1, description="Plan key, e.g. zaptrip")
    is_yearly: bool = Field(default=False, alias="isYearly")
    return_url: Optional[str] = Field(
        default=None,
        alias="returnUrl",
        description="When set, a role update notification is created after payment"
    )

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={"example": {"plan": "zaptrip", "isYearly": True}},
    )


class CheckoutResponse(CamelModel):
    session_id: str = Field(..., alias="sessionId")
    url: Optional[str] = None


class PaymentStatusRequest(CamelModel):
    session_id: str = Field(..., min_length=1, alias="sessionId")


class SubscriptionSummary(CamelModel):
    id: str
    status: str
    plan: Optional[str] = None
    interval: Optional[str] = None
    current_period_end: Optional[datetime] = Field(default=None, alias="currentPeriodEnd")
    cancel_at_period_end: bool = Field(default=False, alias="cancelAtPeriodEnd")


class PaymentStatusResponse(CamelModel):
    status: Optional[str] = None
    role: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    subscription_details: Optional[SubscriptionSummary] = Field(
        default=None, alias="subscriptionDetails"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Subscription management
# ============================================================================


class PaymentMethodDetails(CamelModel):
    id: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    expiry_month: Optional[int] = Field(default=None, alias="expiryMonth")
    expiry_year: Optional[int] = Field(default=None, alias="expiryYear")


class SubscriptionDetails(SubscriptionSummary):
    payment_method: Optional[PaymentMethodDetails] = Field(default=None, alias="paymentMethod")


class SubscriptionDetailsResponse(CamelModel):
    subscription: Optional[SubscriptionDetails] = None


class ChangePlanRequest(CamelModel):
    plan_id: str = Field(..., min_length=1, alias="planId")
    is_yearly: bool = Field(default=False, alias="isYearly")


class SubscriptionActionResponse(CamelModel):
    success: bool = True
    subscription: SubscriptionSummary


class Invoice(BaseModel):
    id: str
    number: Optional[str] = None
    created: Optional[datetime] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    amount_paid: float = 0.0
    currency: Optional[str] = None
    status: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None
    description: str = ""
    paid: bool = False


class BillingHistoryResponse(BaseModel):
    success: bool = True
    invoices: List[Invoice] = Field(default_factory=list)


# ============================================================================
# Admin
# ============================================================================


class UpdateRoleRequest(BaseModel):
    role: Role


class UserRoleListResponse(BaseModel):
    items: List[UserRoleRecord]
    limit: int
    offset: int
    has_more: bool
