"""
Stripe webhook router.

Stripe posts subscription events here. The raw body is verified against the
``Stripe-Signature`` header before any processing. Responses keep the shape
Stripe's dashboard shows: ``{"error": ...}`` on rejection, otherwise the
processing result.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from api.src.dependencies import get_stripe_gateway, get_webhook_processor
from api.src.exceptions import WebhookSignatureError
from api.src.services.stripe_gateway import StripeGateway
from api.src.services.webhook_service import StripeWebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
)


@router.post(
    "/stripe",
    status_code=status.HTTP_200_OK,
    summary="Stripe Subscription Webhook",
    description="""
    Receive a Stripe event for subscriptions.

    **Authentication:** Stripe signature (``Stripe-Signature`` header), no bearer token

    **Handled events:**
    - checkout.session.completed
    - customer.subscription.created / updated / deleted
    - invoice.payment_succeeded / invoice.payment_failed
    - payment_intent.succeeded / payment_intent.payment_failed

    Other event types are acknowledged without action.

    **Error Responses:**
    - 400: Missing or invalid signature, bad metadata, or a processing error
    - 500: Database error while locating the subscription's user
    """,
    responses={
        200: {
            "description": "Event processed",
            "content": {
                "application/json": {
                    "example": {"received": True, "event_type": "customer.subscription.deleted", "status": "OK"}
                }
            }
        },
        400: {
            "description": "Rejected",
            "content": {
                "application/json": {
                    "example": {"error": "Missing signature or endpoint secret"}
                }
            }
        }
    }
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    processor: StripeWebhookProcessor = Depends(get_webhook_processor)
) -> JSONResponse:
    """
    Verify and process a Stripe webhook event.

    Args:
        request: HTTP request (raw body is needed for verification)
        stripe_signature: Stripe-Signature header
        gateway: Stripe gateway
        processor: Webhook processor

    Returns:
        JSON response with the processing result
    """
    payload = await request.body()

    try:
        event = gateway.construct_event(payload, stripe_signature)
    except WebhookSignatureError as e:
        logger.warning("webhook_rejected", reason=e.message)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": e.message})

    try:
        result = await processor.process(event)
    except Exception as e:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(e)})

    return JSONResponse(status_code=result.http_status, content=result.body())
