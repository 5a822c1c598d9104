"""
Billing service.

Operations behind the authenticated billing endpoints: starting a checkout,
confirming a checkout's outcome, and reading or changing the caller's
subscription. A user is linked to their Stripe customer by email.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

import stripe
import structlog

from api.src.exceptions import (
    CheckoutSessionNotFoundError,
    NoActiveSubscriptionError,
    UserNotFoundError,
)
from api.src.models.auth import CurrentUser
from api.src.models.billing import (
    CheckoutResponse,
    Invoice,
    PaymentMethodDetails,
    PaymentStatusResponse,
    SubscriptionDetails,
    SubscriptionSummary,
)
from api.src.models.plans import Role, get_plan, plan_key_for_role
from api.src.repositories.auth_user_repo import AuthUserRepository
from api.src.repositories.user_role_repo import UserRoleRepository
from api.src.services.role_service import RoleService
from api.src.services.stripe_gateway import (
    StripeGateway,
    current_period_end,
    first_item_id,
    first_price,
    metadata_user_id,
    object_id,
)

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired"})


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _interval(subscription: Mapping[str, Any]) -> Optional[str]:
    price = first_price(subscription) or {}
    recurring = price.get("recurring") or {}
    return recurring.get("interval")


def _summary(subscription: Mapping[str, Any], **extra: Any) -> SubscriptionSummary:
    return SubscriptionSummary(
        id=subscription["id"],
        status=subscription["status"],
        current_period_end=_timestamp(current_period_end(subscription)),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        **extra
    )


def _payment_method(value: Any) -> Optional[PaymentMethodDetails]:
    # only set when the list call expanded default_payment_method
    if not value or isinstance(value, str):
        return None
    card = value.get("card") or {}
    return PaymentMethodDetails(
        id=value["id"],
        brand=card.get("brand"),
        last4=card.get("last4"),
        expiry_month=card.get("exp_month"),
        expiry_year=card.get("exp_year"),
    )


def format_invoice(invoice: Mapping[str, Any]) -> Invoice:
    """Flatten a Stripe invoice for the billing history view."""
    lines = (invoice.get("lines") or {}).get("data") or []
    description = invoice.get("description") or (lines[0].get("description") if lines else None) or ""
    return Invoice(
        id=invoice["id"],
        number=invoice.get("number"),
        created=_timestamp(invoice.get("created")),
        period_start=_timestamp(invoice.get("period_start")),
        period_end=_timestamp(invoice.get("period_end")),
        amount_paid=(invoice.get("amount_paid") or 0) / 100,
        currency=invoice.get("currency"),
        status=invoice.get("status"),
        hosted_invoice_url=invoice.get("hosted_invoice_url"),
        invoice_pdf=invoice.get("invoice_pdf"),
        description=description,
        paid=bool(invoice.get("paid")),
    )


class BillingService:
    """Checkout and subscription management for the current user."""

    def __init__(
        self,
        stripe_gateway: StripeGateway,
        role_service: RoleService,
        user_roles: UserRoleRepository,
        auth_users: AuthUserRepository,
        site_url: str
    ):
        self.stripe = stripe_gateway
        self.roles = role_service
        self.user_roles = user_roles
        self.auth_users = auth_users
        self.site_url = site_url

    # =========================================================================
    # Checkout
    # =========================================================================

    async def create_checkout_session(
        self,
        user: CurrentUser,
        plan_key: str,
        yearly: bool,
        origin: Optional[str] = None,
        return_url: Optional[str] = None
    ) -> CheckoutResponse:
        """
        Create a Stripe checkout session for a plan.

        Args:
            user: Purchasing user
            plan_key: Plan key (``zaptrip``, ``zapout``, ...)
            yearly: Bill yearly instead of monthly
            origin: Site origin for redirect URLs; falls back to the site URL
            return_url: Stored in metadata so the webhook notifies the client

        Returns:
            Session id and hosted checkout URL

        Raises:
            InvalidPlanError: If the plan key is unknown
        """
        plan = get_plan(plan_key)
        base_url = (origin or self.site_url).rstrip("/")

        metadata = {
            "userId": str(user.id),
            "plan": plan.key,
            "role": plan.role.value,
            "isYearly": "true" if yearly else "false",
            "paymentType": "subscription",
        }
        if return_url:
            metadata["returnUrl"] = return_url

        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "mode": "subscription",
            "success_url": f"{base_url}/dashboard?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base_url}/pricing",
            "client_reference_id": str(user.id),
            "allow_promotion_codes": True,
            "metadata": metadata,
            "line_items": [{"price": plan.price_id(yearly), "quantity": 1}],
        }
        if user.email:
            params["customer_email"] = user.email

        session = await self.stripe.create_checkout_session(params)

        try:
            if await self.user_roles.get_role(user.id) is None:
                await self.user_roles.insert_role(user.id, Role.NOSUBS.value, user.email)
        except Exception as e:
            logger.error("checkout_role_precreate_failed", user_id=str(user.id), error=str(e))

        logger.info(
            "checkout_session_started",
            user_id=str(user.id),
            plan=plan.key,
            yearly=yearly,
            session_id=session["id"]
        )
        return CheckoutResponse(session_id=session["id"], url=session.get("url"))

    async def check_payment_status(self, session_id: str, user: CurrentUser) -> PaymentStatusResponse:
        """
        Reconcile the caller's role with a finished checkout session.

        A paid session grants the role in its metadata; an unpaid one revokes.
        If the session's subscription has ended, the role is revoked as well.

        Raises:
            CheckoutSessionNotFoundError: If the session does not exist or
                belongs to another user
        """
        try:
            session = await self.stripe.retrieve_checkout_session(session_id)
        except stripe.InvalidRequestError as e:
            raise CheckoutSessionNotFoundError("Checkout session not found", details=str(e)) from e

        metadata = dict(session.get("metadata") or {})
        owner = metadata_user_id(session)
        if metadata.get("userId") and (owner is None or not user.can_act_for(owner)):
            logger.warning("checkout_session_owner_mismatch", user_id=str(user.id), session_id=session_id)
            raise CheckoutSessionNotFoundError("Checkout session not found")

        user_id = owner or user.id
        status = session.get("payment_status")

        if status == "paid" and metadata.get("role"):
            await self._apply_quietly(user_id, metadata["role"])
        elif status != "paid":
            await self._apply_quietly(user_id, Role.NOSUBS)

        details = None
        subscription_id = object_id(session.get("subscription"))
        if subscription_id:
            try:
                subscription = await self.stripe.retrieve_subscription(subscription_id)
                details = _summary(subscription)
                if subscription["status"] in TERMINAL_STATUSES:
                    logger.info(
                        "checkout_subscription_ended",
                        subscription_id=subscription_id,
                        status=subscription["status"]
                    )
                    await self._apply_quietly(user_id, Role.NOSUBS)
            except Exception as e:
                logger.error("checkout_subscription_retrieve_failed", subscription_id=subscription_id, error=str(e))

        role = None
        try:
            record = await self.user_roles.get_role(user_id)
            role = record.role if record else None
        except Exception as e:
            logger.error("payment_status_role_read_failed", user_id=str(user_id), error=str(e))

        return PaymentStatusResponse(
            status=status,
            role=role,
            customer=object_id(session.get("customer")),
            subscription=subscription_id,
            subscription_details=details,
            metadata=metadata,
        )

    # =========================================================================
    # Subscription management
    # =========================================================================

    async def subscription_details(self, user_id: UUID) -> Optional[SubscriptionDetails]:
        """
        Latest subscription of the user's Stripe customer.

        Returns:
            Subscription details, or None when the user has no customer or
            no subscription
        """
        customer = await self._customer_for(user_id)
        if customer is None:
            return None

        subscription = await self.stripe.latest_subscription(
            customer["id"], status="all", expand_payment_method=True
        )
        if subscription is None:
            logger.info("subscription_not_found", user_id=str(user_id), customer_id=customer["id"])
            return None

        record = await self.user_roles.get_role(user_id)
        return SubscriptionDetails(
            id=subscription["id"],
            status=subscription["status"],
            plan=plan_key_for_role(record.role if record else None),
            interval=_interval(subscription),
            current_period_end=_timestamp(current_period_end(subscription)),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            payment_method=_payment_method(subscription.get("default_payment_method")),
        )

    async def change_plan(self, user_id: UUID, plan_key: str, yearly: bool) -> SubscriptionSummary:
        """
        Move the active subscription to another plan's price.

        Stripe prorates the change. The role follows when the resulting
        ``customer.subscription.updated`` webhook arrives.

        Raises:
            InvalidPlanError: If the plan key is unknown
            NoActiveSubscriptionError: If the user has no active subscription
        """
        plan = get_plan(plan_key)
        subscription = await self._active_subscription(user_id)

        updated = await self.stripe.update_subscription(
            subscription["id"],
            {
                "items": [{"id": first_item_id(subscription), "price": plan.price_id(yearly)}],
                "proration_behavior": "create_prorations",
                "metadata": {
                    "userId": str(user_id),
                    "plan": plan.key,
                    "role": plan.role.value,
                    "isYearly": "true" if yearly else "false",
                },
            }
        )

        logger.info("subscription_plan_changed", user_id=str(user_id), plan=plan.key, yearly=yearly)
        return _summary(updated, plan=plan.key, interval="year" if yearly else "month")

    async def cancel_subscription(self, user_id: UUID) -> SubscriptionSummary:
        """Cancel at the end of the current period."""
        subscription = await self._active_subscription(user_id)
        if subscription.get("cancel_at_period_end"):
            return _summary(subscription)

        updated = await self.stripe.update_subscription(
            subscription["id"], {"cancel_at_period_end": True}
        )
        logger.info("subscription_cancel_scheduled", user_id=str(user_id), subscription_id=subscription["id"])
        return _summary(updated)

    async def reactivate_subscription(self, user_id: UUID) -> SubscriptionSummary:
        """Undo a scheduled cancellation; a no-op for subscriptions not set to cancel."""
        customer = await self._customer_for(user_id)
        subscription = None
        if customer is not None:
            subscription = await self.stripe.latest_subscription(customer["id"], status="all")
        if subscription is None:
            raise NoActiveSubscriptionError("No subscription found")

        if not subscription.get("cancel_at_period_end"):
            logger.info("subscription_already_active", user_id=str(user_id), subscription_id=subscription["id"])
            return _summary(subscription)

        updated = await self.stripe.update_subscription(
            subscription["id"], {"cancel_at_period_end": False}
        )
        logger.info("subscription_reactivated", user_id=str(user_id), subscription_id=subscription["id"])
        return _summary(updated)

    async def billing_history(self, user_id: UUID, limit: int = 10) -> List[Invoice]:
        """Recent invoices of the user's customer, newest first."""
        customer = await self._customer_for(user_id)
        if customer is None:
            return []
        invoices = await self.stripe.list_invoices(customer["id"], limit=limit)
        return [format_invoice(invoice) for invoice in invoices]

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _customer_for(self, user_id: UUID):
        """Stripe customer registered with the user's auth email, or None."""
        user = await self.auth_users.get_user(user_id)
        if user is None:
            raise UserNotFoundError("User not found", details=f"user '{user_id}'")
        if not user.email:
            logger.info("user_has_no_email", user_id=str(user_id))
            return None

        customer = await self.stripe.find_customer_by_email(user.email)
        if customer is None:
            logger.info("stripe_customer_not_found", user_id=str(user_id))
        return customer

    async def _active_subscription(self, user_id: UUID):
        customer = await self._customer_for(user_id)
        subscription = None
        if customer is not None:
            subscription = await self.stripe.latest_subscription(customer["id"], status="active")
        if subscription is None:
            raise NoActiveSubscriptionError(
                "No active subscription",
                details="You need an active subscription to change plans"
            )
        return subscription

    async def _apply_quietly(self, user_id: UUID, role) -> None:
        try:
            await self.roles.apply_role(user_id, role)
        except Exception as e:
            logger.error("payment_status_role_update_failed", user_id=str(user_id), error=str(e))
