"""
Billing router for the signed-in user's subscription.

Provides REST API endpoints for:
- Starting a checkout and confirming its outcome
- Reading, changing, canceling and reactivating the subscription
- Billing history

All endpoints require a Supabase access token and act on the caller's own
account.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.src.dependencies import get_billing_service, get_current_user, get_request_origin
from api.src.exceptions import BillingError
from api.src.models.auth import CurrentUser, ErrorResponse
from api.src.models.billing import (
    BillingHistoryResponse,
    ChangePlanRequest,
    CheckoutRequest,
    CheckoutResponse,
    PaymentStatusRequest,
    PaymentStatusResponse,
    SubscriptionActionResponse,
    SubscriptionDetailsResponse,
)
from api.src.services.billing_service import BillingService

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/billing",
    tags=["Billing"],
    responses={
        400: {"model": ErrorResponse, "description": "Bad Request"},
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        422: {"model": ErrorResponse, "description": "Validation Error"}
    }
)


def _internal_error(event: str, user: CurrentUser, e: Exception, detail: str) -> HTTPException:
    logger.error(event, user_id=str(user.id), error=str(e), error_type=type(e).__name__)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


# ============================================================================
# CHECKOUT
# ============================================================================


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    summary="Create Checkout Session",
    description="""
    Start a Stripe checkout for a subscription plan.

    **Request Body:**
    - plan: zaptrip, zapout, zaproad or zappro
    - isYearly: bill yearly instead of monthly
    - returnUrl: optional; the client is notified through role_update_notifications

    **Success Response (200):** sessionId and the hosted checkout url

    **Error Responses:**
    - 400: Invalid plan selected
    """
)
async def create_checkout(
    body: CheckoutRequest,
    user: CurrentUser = Depends(get_current_user),
    origin: Optional[str] = Depends(get_request_origin),
    service: BillingService = Depends(get_billing_service)
) -> CheckoutResponse:
    try:
        return await service.create_checkout_session(
            user, body.plan, body.is_yearly, origin=origin, return_url=body.return_url
        )
    except BillingError as e:
        raise e.to_http()
    except Exception as e:
        raise _internal_error("checkout_create_error", user, e, "Failed to create checkout session")


@router.post(
    "/payment-status",
    response_model=PaymentStatusResponse,
    summary="Check Payment Status",
    description="""
    Confirm the outcome of a checkout session and reconcile the caller's role.

    A paid session grants the purchased role; an unpaid one, or a session
    whose subscription has ended, leaves the caller on nosubs.

    **Error Responses:**
    - 404: Checkout session not found
    """
)
async def payment_status(
    body: PaymentStatusRequest,
    user: CurrentUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service)
) -> PaymentStatusResponse:
    try:
        return await service.check_payment_status(body.session_id, user)
    except BillingError as e:
        raise e.to_http()
    except Exception as e:
        raise _internal_error("payment_status_error", user, e, "Failed to check payment status")


# ============================================================================
# SUBSCRIPTION MANAGEMENT
# ============================================================================


@router.get(
    "/subscription",
    response_model=SubscriptionDetailsResponse,
    summary="Get Subscription Details",
    description="""
    Latest subscription of the caller, including the default payment method.

    Returns ``{"subscription": null}`` when the caller has no Stripe customer
    or no subscription.
    """
)
async def get_subscription(
    user: CurrentUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service)
) -> SubscriptionDetailsResponse:
    try:
        details = await service.subscription_details(user.id)
        return SubscriptionDetailsResponse(subscription=details)
    except BillingError as e:
        raise e.to_http()
    except Exception as e:
        raise _internal_error("subscription_details_error", user, e, "An error occurred while fetching subscription details")


@router.post(
    "/subscription/change-plan",
    response_model=SubscriptionActionResponse,
    summary="Change Plan",
    description="""
    Move the active subscription to another plan (prorated).

    The new role is applied when Stripe confirms the change by webhook.

    **Error Responses:**
    - 400: Invalid plan selected, or no active subscription
    """
)
async def change_plan(
    body: ChangePlanRequest,
    user: CurrentUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service)
) -> SubscriptionActionResponse:
    try:
        subscription = await service.change_plan(user.id, body.plan_id, body.is_yearly)
        return SubscriptionActionResponse(subscription=subscription)
    except BillingError as e:
        raise e.to_http()
    except Exception as e:
        raise _internal_error("change_plan_error", user, e, "Failed to process subscription change")


@router.post(
    "/subscription/cancel",
    response_model=SubscriptionActionResponse,
    summary="Cancel Subscription",
    description="Cancel the active subscription at the end of the current period."
)
async def cancel_subscription(
    user: CurrentUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service)
) -> SubscriptionActionResponse:
    try:
        subscription = await service.cancel_subscription(user.id)
        return SubscriptionActionResponse(subscription=subscription)
    except BillingError as e:
        raise e.to_http()
    except Exception as e:
        raise _internal_error("cancel_subscription_error", user, e, "Failed to cancel subscription")


@router.post(
    "/subscription/reactivate",
    response_model=SubscriptionActionResponse,
    summary="Reactivate Subscription",
    description="Undo a scheduled cancellation. Subscriptions not set to cancel are returned unchanged."
)
async def reactivate_subscription(
    user: CurrentUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service)
) -> SubscriptionActionResponse:
    try:
        subscription = await service.reactivate_subscription(user.id)
        return SubscriptionActionResponse(subscription=subscription)
    except BillingError as e:
        raise e.to_http()
    except Exception as e:
        raise _internal_error("reactivate_subscription_error", user, e, "Failed to reactivate subscription")


@router.get(
    "/history",
    response_model=BillingHistoryResponse,
    summary="Billing History",
    description="Recent invoices of the caller, newest first. Amounts are in major currency units."
)
async def billing_history(
    limit: int = Query(default=10, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service)
) -> BillingHistoryResponse:
    try:
        invoices = await service.billing_history(user.id, limit=limit)
        return BillingHistoryResponse(invoices=invoices)
    except BillingError as e:
        raise e.to_http()
    except Exception as e:
        raise _internal_error("billing_history_error", user, e, "Failed to fetch billing history")
