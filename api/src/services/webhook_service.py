"""
Stripe subscription webhook processing.

Maps verified Stripe events to role changes:

- ``checkout.session.completed``: grant the purchased role, record the payment
- ``customer.subscription.*`` and ``invoice.*``: keep the role in step with
  the subscription's price and status
- ``payment_intent.payment_failed``: revoke the role of the paying user

Best-effort steps (auth metadata sync, email, payment record, client
notification) are logged on failure and never fail the event.
"""

import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
from uuid import UUID

import structlog

from api.src.exceptions import InvalidPlanError, UserNotFoundError
from api.src.models.billing import AuthUser, RoleUpdateResult, WebhookResult
from api.src.models.plans import (
    PLANS,
    Role,
    billing_label,
    is_yearly_price,
    normalize_role,
    parse_flag,
    plan_display_name_for_role,
    plan_name_for_price,
    role_for_price,
)
from api.src.repositories.auth_user_repo import AuthUserRepository
from api.src.repositories.payment_repo import PaymentRepository
from api.src.repositories.user_role_repo import UserRoleRepository
from api.src.services import email_service
from api.src.services.email_service import SubscriptionEmailService, display_name
from api.src.services.role_service import RoleService
from api.src.services.stripe_gateway import (
    StripeGateway,
    current_period_end,
    first_price,
    first_price_id,
    metadata_user_id,
    object_id,
)
from api.src.services.user_resolver import SubscriptionUserResolver
from shared.logging import bind_context, unbind_context
from shared.metrics import get_billing_metrics

logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = frozenset({"active", "trialing"})
DELINQUENT_STATUSES = frozenset({"past_due", "unpaid"})

Handler = Callable[[Mapping[str, Any], Mapping[str, Any]], Awaitable[WebhookResult]]


class StripeWebhookProcessor:
    """Dispatches verified Stripe events to their handlers."""

    def __init__(
        self,
        stripe_gateway: StripeGateway,
        role_service: RoleService,
        resolver: SubscriptionUserResolver,
        payments: PaymentRepository,
        user_roles: UserRoleRepository,
        auth_users: AuthUserRepository,
        email: SubscriptionEmailService
    ):
        self.stripe = stripe_gateway
        self.roles = role_service
        self.resolver = resolver
        self.payments = payments
        self.user_roles = user_roles
        self.auth_users = auth_users
        self.email = email
        self.metrics = get_billing_metrics()

        self._handlers: Dict[str, Handler] = {
            "checkout.session.completed": self._checkout_session_completed,
            "payment_intent.succeeded": self._payment_intent_succeeded,
            "payment_intent.payment_failed": self._payment_intent_failed,
            "customer.subscription.created": self._subscription_created,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._invoice_payment_succeeded,
            "invoice.payment_failed": self._invoice_payment_failed,
        }

    async def process(self, event: Mapping[str, Any]) -> WebhookResult:
        """
        Process one verified event.

        Args:
            event: Stripe event (``id``, ``type``, ``data.object``)

        Returns:
            WebhookResult whose ``http_status`` is the status to answer with

        Raises:
            Exception: Unexpected errors (e.g. a failed Stripe API call) are
                re-raised for the route to report
        """
        event_type = event["type"]
        bind_context(stripe_event_id=event.get("id"), stripe_event_type=event_type)
        self.metrics.webhook_events.labels(event_type=event_type).inc()
        start = time.perf_counter()

        try:
            logger.info("webhook_event_received")
            handler = self._handlers.get(event_type)
            if handler is None:
                logger.info("webhook_event_ignored")
                result = WebhookResult(event_type=event_type)
            else:
                result = await handler(event["data"]["object"], event)

            if result.http_status >= 400:
                self.metrics.webhook_failures.labels(
                    event_type=event_type, reason=f"http_{result.http_status}"
                ).inc()
            logger.info(
                "webhook_event_processed",
                status=result.status,
                http_status=result.http_status
            )
            return result

        except Exception as e:
            self.metrics.webhook_failures.labels(event_type=event_type, reason=type(e).__name__).inc()
            logger.error("webhook_event_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            raise

        finally:
            self.metrics.webhook_duration.labels(event_type=event_type).observe(
                time.perf_counter() - start
            )
            unbind_context("stripe_event_id", "stripe_event_type")

    # =========================================================================
    # Shared operations
    # =========================================================================

    async def handle_subscription_change(self, subscription: Mapping[str, Any], active: bool) -> bool:
        """
        Align the role of the subscription's user with its state.

        Active subscriptions grant the role of their first price (an unmapped
        price revokes); inactive ones revoke.

        Returns:
            True if a role was written, False if no user was found or the
            write failed
        """
        resolved = await self.resolver.resolve(subscription)
        if resolved is None:
            logger.error(
                "subscription_change_user_not_found",
                subscription_id=subscription.get("id"),
                customer_id=object_id(subscription.get("customer"))
            )
            return False

        price_id = first_price_id(subscription)
        role = Role.NOSUBS
        if active:
            role = role_for_price(price_id)
            if role is None:
                logger.warning("subscription_price_unmapped", price_id=price_id)
                role = Role.NOSUBS

        try:
            result = await self.roles.apply_role(resolved.user_id, role)
        except Exception as e:
            logger.error(
                "subscription_change_role_update_failed",
                user_id=str(resolved.user_id),
                role=role.value,
                error=str(e)
            )
            return False

        await self.roles.sync_auth_metadata(resolved.user_id, result.role)
        logger.info(
            "subscription_change_applied",
            user_id=str(resolved.user_id),
            role=result.role.value,
            active=active,
            verified=result.verified
        )
        return True

    async def force_resync(self, subscription_id: str) -> RoleUpdateResult:
        """
        Re-apply the role a subscription's price grants.

        Raises:
            InvalidPlanError: If the subscription's price maps to no role
            UserNotFoundError: If no user can be found for the subscription
        """
        subscription = await self.stripe.retrieve_subscription(subscription_id)
        price_id = first_price_id(subscription)
        role = role_for_price(price_id)
        if role is None:
            raise InvalidPlanError(
                "Subscription price is not mapped to a plan",
                details=f"price '{price_id}'"
            )

        resolved = await self.resolver.resolve(subscription)
        if resolved is None:
            raise UserNotFoundError(
                "No user found for subscription",
                details=f"subscription '{subscription_id}'"
            )

        result = await self.roles.apply_role(resolved.user_id, role)
        await self.roles.sync_auth_metadata(resolved.user_id, result.role)
        logger.info(
            "subscription_force_resynced",
            subscription_id=subscription_id,
            user_id=str(resolved.user_id),
            role=result.role.value
        )
        return result

    # =========================================================================
    # Event handlers
    # =========================================================================

    async def _checkout_session_completed(self, session, event) -> WebhookResult:
        event_type = event["type"]
        metadata = session.get("metadata") or {}
        payment_type = metadata.get("paymentType")

        if payment_type != "subscription":
            logger.info("checkout_not_subscription_skipped", payment_type=payment_type)
            return WebhookResult(
                event_type=event_type,
                message="Non-subscription payment - handled by appropriate webhook"
            )

        user_id = metadata_user_id(session)
        plan = metadata.get("plan")
        if not metadata.get("userId") or not plan:
            logger.error("checkout_metadata_missing", session_id=session.get("id"))
            return WebhookResult(
                event_type=event_type,
                status="ERROR",
                error="Missing required subscription metadata",
                http_status=400
            )
        if user_id is None:
            logger.error("checkout_user_id_invalid", session_id=session.get("id"))
            return WebhookResult(
                event_type=event_type,
                status="ERROR",
                error="Invalid userId in subscription metadata",
                http_status=400
            )

        if session.get("payment_status") != "paid":
            logger.warning(
                "checkout_not_paid",
                session_id=session.get("id"),
                payment_status=session.get("payment_status")
            )
            return WebhookResult(event_type=event_type, message="Payment not completed yet")

        yearly = parse_flag(metadata.get("isYearly"))
        subscription_id = object_id(session.get("subscription"))
        email = (session.get("customer_details") or {}).get("email")
        role_value = metadata.get("role")
        price_id = None

        if subscription_id and (not role_value or role_value == "undefined"):
            try:
                subscription = await self.stripe.retrieve_subscription(subscription_id)
                price_id = first_price_id(subscription)
                mapped = role_for_price(price_id)
                if mapped is None:
                    logger.error("checkout_price_unmapped", price_id=price_id)
                role_value = (mapped or Role.NOSUBS).value
            except Exception as e:
                logger.error("checkout_subscription_retrieve_failed", subscription_id=subscription_id, error=str(e))
                role_value = Role.NOSUBS.value

        role = normalize_role(role_value)
        logger.info(
            "checkout_subscription_paid",
            user_id=str(user_id),
            plan=plan,
            yearly=yearly,
            role=role.value
        )

        try:
            result = await self.roles.apply_role(user_id, role, email)
            role = result.role
            user = await self.roles.sync_auth_metadata(user_id, role)
            await self._send_new_subscription_email(user_id, user, plan, yearly, price_id)
        except Exception as e:
            logger.error("checkout_role_update_failed", user_id=str(user_id), error=str(e))

        try:
            await self.payments.create_payment(
                user_id,
                subscription_id,
                email,
                subscription_name=billing_label(plan, yearly)
            )
        except Exception as e:
            logger.error("checkout_payment_record_failed", user_id=str(user_id), error=str(e))

        if metadata.get("returnUrl"):
            try:
                await self.user_roles.create_role_update_notification(user_id, role.value)
            except Exception as e:
                logger.error("checkout_notification_failed", user_id=str(user_id), error=str(e))

        return WebhookResult(event_type=event_type)

    async def _payment_intent_succeeded(self, payment_intent, event) -> WebhookResult:
        logger.info("payment_intent_succeeded", payment_intent_id=payment_intent.get("id"))
        return WebhookResult(event_type=event["type"])

    async def _payment_intent_failed(self, payment_intent, event) -> WebhookResult:
        user_id = metadata_user_id(payment_intent)
        if user_id is None:
            logger.info("payment_intent_failed_no_user", payment_intent_id=payment_intent.get("id"))
        else:
            logger.info("payment_intent_failed_revoking", user_id=str(user_id))
            await self._revoke(user_id)
        return WebhookResult(event_type=event["type"])

    async def _subscription_created(self, subscription, event) -> WebhookResult:
        await self.handle_subscription_change(subscription, active=True)
        return WebhookResult(event_type=event["type"])

    async def _subscription_updated(self, subscription, event) -> WebhookResult:
        event_type = event["type"]
        now = int(time.time())
        period_end = current_period_end(subscription)

        if subscription.get("cancel_at_period_end") and period_end is not None and period_end <= now:
            logger.info("subscription_period_ended_canceling", subscription_id=subscription.get("id"))
            try:
                user_id = await self.resolver.find_by_subscription_id(subscription["id"])
            except Exception as e:
                logger.error("subscription_user_lookup_failed", error=str(e))
                return WebhookResult(
                    event_type=event_type,
                    status="ERROR",
                    error="Error finding user by subscription ID",
                    http_status=500
                )

            if user_id:
                try:
                    await self.roles.revoke(user_id)
                except Exception as e:
                    logger.error("subscription_revoke_failed", user_id=str(user_id), error=str(e))
                    return WebhookResult(
                        event_type=event_type,
                        status="ERROR",
                        error="Error updating user role",
                        http_status=500
                    )
                await self.roles.sync_auth_metadata(user_id, Role.NOSUBS)
                price = first_price(subscription) or {}
                await self._send_email_to_user(
                    email_service.CANCELED,
                    user_id,
                    plan_name=price.get("nickname") or "Subscription"
                )
            return WebhookResult(event_type=event_type)

        if subscription.get("status") in ACTIVE_STATUSES:
            return await self._subscription_plan_changed(subscription, event_type)

        logger.info("subscription_update_acknowledged", status=subscription.get("status"))
        return WebhookResult(event_type=event_type)

    async def _subscription_plan_changed(self, subscription, event_type: str) -> WebhookResult:
        price_id = first_price_id(subscription)
        role = role_for_price(price_id)
        if role is None:
            logger.warning("subscription_price_unmapped", price_id=price_id)
            return WebhookResult(event_type=event_type)

        resolved = await self.resolver.resolve(subscription)
        if resolved is None:
            return WebhookResult(event_type=event_type)

        try:
            result = await self.roles.apply_role(resolved.user_id, role)
        except Exception as e:
            logger.error("subscription_role_update_failed", user_id=str(resolved.user_id), error=str(e))
            return WebhookResult(
                event_type=event_type,
                status="ERROR",
                error="Error updating user role",
                http_status=500
            )

        if result.previous_role == role.value:
            return WebhookResult(event_type=event_type)

        await self.roles.sync_auth_metadata(resolved.user_id, role)
        if result.previous_role in (None, Role.NOSUBS.value):
            # first activation; checkout.session.completed sends the welcome email
            return WebhookResult(event_type=event_type)

        await self._send_email_to_user(
            email_service.UPDATED,
            resolved.user_id,
            plan_name=plan_name_for_price(price_id) or plan_display_name_for_role(role.value),
            yearly=is_yearly_price(price_id),
            previous_plan=plan_display_name_for_role(result.previous_role)
        )
        return WebhookResult(event_type=event_type)

    async def _subscription_deleted(self, subscription, event) -> WebhookResult:
        event_type = event["type"]
        subscription_id = subscription.get("id")

        try:
            user_id = await self.resolver.find_by_subscription_id(subscription_id)
        except Exception as e:
            logger.error("subscription_user_lookup_failed", subscription_id=subscription_id, error=str(e))
            return WebhookResult(
                event_type=event_type,
                status="ERROR",
                error="Error finding user by subscription ID",
                http_status=500
            )

        if user_id:
            await self._revoke(user_id)
            return WebhookResult(event_type=event_type, status="User role updated to nosubs")

        user_id = await self.resolver.find_by_customer_role_email(object_id(subscription.get("customer")))
        if user_id:
            await self._revoke(user_id)
            return WebhookResult(
                event_type=event_type,
                status="User role updated to nosubs by email lookup"
            )

        logger.warning("subscription_deleted_user_not_found", subscription_id=subscription_id)
        return WebhookResult(event_type=event_type, status="No user found for subscription")

    async def _invoice_payment_succeeded(self, invoice, event) -> WebhookResult:
        subscription_id = object_id(invoice.get("subscription"))
        if subscription_id:
            subscription = await self.stripe.retrieve_subscription(subscription_id)
            await self.handle_subscription_change(subscription, active=True)
        return WebhookResult(event_type=event["type"])

    async def _invoice_payment_failed(self, invoice, event) -> WebhookResult:
        subscription_id = object_id(invoice.get("subscription"))
        if subscription_id:
            subscription = await self.stripe.retrieve_subscription(subscription_id)
            if subscription.get("status") in DELINQUENT_STATUSES:
                logger.info(
                    "subscription_delinquent",
                    subscription_id=subscription_id,
                    status=subscription.get("status")
                )
                await self.handle_subscription_change(subscription, active=False)
        return WebhookResult(event_type=event["type"])

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _revoke(self, user_id: UUID) -> bool:
        try:
            await self.roles.revoke(user_id)
        except Exception as e:
            logger.error("role_revoke_failed", user_id=str(user_id), error=str(e))
            return False
        await self.roles.sync_auth_metadata(user_id, Role.NOSUBS)
        return True

    async def _send_new_subscription_email(
        self,
        user_id: UUID,
        user: Optional[AuthUser],
        plan: str,
        yearly: bool,
        price_id: Optional[str]
    ) -> None:
        plan_name = plan_name_for_price(price_id)
        if not plan_name:
            known = PLANS.get(plan.lower())
            plan_name = f"{known.name if known else plan} {'Yearly' if yearly else 'Monthly'}"
        await self._send_email_to_user(email_service.NEW, user_id, plan_name, yearly=yearly, user=user)

    async def _send_email_to_user(
        self,
        kind: str,
        user_id: UUID,
        plan_name: str,
        yearly: bool = False,
        previous_plan: Optional[str] = None,
        user: Optional[AuthUser] = None
    ) -> None:
        try:
            if user is None:
                user = await self.auth_users.get_user(user_id)
        except Exception as e:
            logger.error("email_user_lookup_failed", user_id=str(user_id), kind=kind, error=str(e))
            return

        if user is None:
            logger.warning("email_user_not_found", user_id=str(user_id), kind=kind)
            return

        await self.email.send(
            kind,
            user.email,
            display_name(user.metadata),
            plan_name,
            yearly=yearly,
            previous_plan=previous_plan
        )
