"""
Stripe gateway.

Thin async wrapper over the official ``stripe`` SDK. The SDK is synchronous,
so every network call runs in a worker thread via ``asyncio.to_thread``.
Stripe objects are read with mapping access (``obj["items"]``), which works
for both SDK objects and the plain dicts used in tests.
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

import stripe
import structlog

from api.src.config import Settings, get_settings
from api.src.exceptions import WebhookSignatureError

logger = structlog.get_logger(__name__)


# ============================================================================
# Object helpers
# ============================================================================


def _first_item(subscription: Optional[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    if not subscription:
        return None
    try:
        items = subscription["items"]["data"]
    except (KeyError, TypeError):
        return None
    return items[0] if items else None


def first_price(subscription: Optional[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    """Price object of the subscription's first item."""
    item = _first_item(subscription)
    if not item:
        return None
    return item.get("price")


def first_price_id(subscription: Optional[Mapping[str, Any]]) -> Optional[str]:
    price = first_price(subscription)
    return price.get("id") if price else None


def first_item_id(subscription: Optional[Mapping[str, Any]]) -> Optional[str]:
    item = _first_item(subscription)
    return item.get("id") if item else None


def customer_email(customer: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Email of a customer; None for missing or deleted customers."""
    if not customer or customer.get("deleted"):
        return None
    return customer.get("email")


def object_id(value: Any) -> Optional[str]:
    """ID of a field that may be either an ID string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def current_period_end(subscription: Optional[Mapping[str, Any]]) -> Optional[int]:
    """Period end of a subscription.

    Newer API versions only carry it on the subscription items, so the first
    item is used when the subscription itself has none.
    """
    if not subscription:
        return None
    value = subscription.get("current_period_end")
    if value is None:
        item = _first_item(subscription)
        value = item.get("current_period_end") if item else None
    return value


def metadata_user_id(obj: Optional[Mapping[str, Any]]) -> Optional[UUID]:
    """``userId`` from an object's metadata; None when absent or malformed."""
    metadata = (obj or {}).get("metadata") or {}
    try:
        return UUID(str(metadata["userId"]))
    except (KeyError, TypeError, ValueError):
        return None


# ============================================================================
# Gateway
# ============================================================================


class StripeGateway:
    """Async facade over ``stripe.StripeClient``."""

    def __init__(
        self,
        client: Optional[stripe.StripeClient] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or get_settings()
        self.client = client or stripe.StripeClient(
            self.settings.stripe_secret_key,
            stripe_version=self.settings.stripe_api_version,
        )

    def construct_event(self, payload: bytes, signature: Optional[str]) -> stripe.Event:
        """
        Verify a webhook payload and parse it into an event.

        Args:
            payload: Raw request body, exactly as received
            signature: Value of the ``Stripe-Signature`` header

        Raises:
            WebhookSignatureError: If the signature or secret is missing, or
                the signature does not match the payload
        """
        secret = self.settings.stripe_webhook_secret
        if not signature or not secret:
            raise WebhookSignatureError("Missing signature or endpoint secret")

        try:
            return self.client.construct_event(
                payload,
                signature,
                secret,
                tolerance=self.settings.stripe_tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise WebhookSignatureError(
                f"Webhook signature verification failed: {e}"
            ) from e

    async def retrieve_subscription(self, subscription_id: str, expand: Optional[List[str]] = None):
        params = {"expand": expand} if expand else None
        return await asyncio.to_thread(
            self.client.subscriptions.retrieve, subscription_id, params=params
        )

    async def retrieve_customer(self, customer_id: str):
        return await asyncio.to_thread(self.client.customers.retrieve, customer_id)

    async def find_customer_by_email(self, email: str):
        """First Stripe customer registered with this email, or None."""
        customers = await asyncio.to_thread(
            self.client.customers.list, params={"email": email, "limit": 1}
        )
        data = customers["data"]
        return data[0] if data else None

    async def latest_subscription(
        self,
        customer_id: str,
        status: str = "all",
        expand_payment_method: bool = False
    ):
        """Most recent subscription of a customer with the given status filter."""
        params: Dict[str, Any] = {"customer": customer_id, "status": status, "limit": 1}
        if expand_payment_method:
            params["expand"] = ["data.default_payment_method"]
        subscriptions = await asyncio.to_thread(self.client.subscriptions.list, params=params)
        data = subscriptions["data"]
        return data[0] if data else None

    async def create_checkout_session(self, params: Dict[str, Any]):
        session = await asyncio.to_thread(self.client.checkout.sessions.create, params=params)
        logger.info("stripe_checkout_session_created", session_id=session["id"])
        return session

    async def retrieve_checkout_session(self, session_id: str):
        return await asyncio.to_thread(self.client.checkout.sessions.retrieve, session_id)

    async def update_subscription(self, subscription_id: str, params: Dict[str, Any]):
        subscription = await asyncio.to_thread(
            self.client.subscriptions.update, subscription_id, params=params
        )
        logger.info(
            "stripe_subscription_updated",
            subscription_id=subscription_id,
            fields=sorted(params)
        )
        return subscription

    async def list_invoices(self, customer_id: str, limit: int = 10) -> List[Any]:
        invoices = await asyncio.to_thread(
            self.client.invoices.list, params={"customer": customer_id, "limit": limit}
        )
        return list(invoices["data"])
