"""
Subscription user resolver.

Stripe subscription events name a subscription and a customer, never an app
user. The resolver finds the user by trying lookups in order and stops at
the first hit:

1. ``subscription``: a payment recorded for the subscription id
2. ``customer_email``: a payment recorded under the subscription's customer email
3. ``stripe_customer``: the Stripe customer's email, matched against
   ``user_roles`` and then ``auth.users``

A hit through the third strategy records a payment row so the first strategy
succeeds for later events of the same subscription.
"""

from typing import Any, Mapping, Optional
from uuid import UUID

import structlog

from api.src.models.billing import ResolvedUser
from api.src.repositories.auth_user_repo import AuthUserRepository
from api.src.repositories.payment_repo import PaymentRepository
from api.src.repositories.user_role_repo import UserRoleRepository
from api.src.services.stripe_gateway import StripeGateway, customer_email, object_id
from shared.metrics import get_billing_metrics

logger = structlog.get_logger(__name__)

STRATEGY_SUBSCRIPTION = "subscription"
STRATEGY_CUSTOMER_EMAIL = "customer_email"
STRATEGY_STRIPE_CUSTOMER = "stripe_customer"


class SubscriptionUserResolver:
    """Locates the app user behind a Stripe subscription."""

    def __init__(
        self,
        payments: PaymentRepository,
        user_roles: UserRoleRepository,
        auth_users: AuthUserRepository,
        stripe_gateway: StripeGateway
    ):
        self.payments = payments
        self.user_roles = user_roles
        self.auth_users = auth_users
        self.stripe = stripe_gateway
        self.metrics = get_billing_metrics()

    async def resolve(self, subscription: Mapping[str, Any]) -> Optional[ResolvedUser]:
        """
        Find the user for a subscription.

        Args:
            subscription: Stripe subscription object

        Returns:
            ResolvedUser with the strategy that matched, or None
        """
        subscription_id = subscription.get("id")
        customer_id = object_id(subscription.get("customer"))
        log = logger.bind(subscription_id=subscription_id, customer_id=customer_id)

        user_id = await self._by_subscription(subscription_id, log)
        if user_id:
            return self._found(user_id, STRATEGY_SUBSCRIPTION, log)

        email = subscription.get("customer_email")
        if email:
            user_id = await self._by_payment_email(email, log)
            if user_id:
                return self._found(user_id, STRATEGY_CUSTOMER_EMAIL, log)

        if customer_id:
            user_id = await self._by_stripe_customer(subscription_id, customer_id, log)
            if user_id:
                return self._found(user_id, STRATEGY_STRIPE_CUSTOMER, log)

        log.warning("subscription_user_not_found")
        self.metrics.user_resolutions.labels(strategy="none").inc()
        return None

    async def find_by_subscription_id(self, subscription_id: str) -> Optional[UUID]:
        """
        Payments-only lookup.

        Unlike :meth:`resolve`, database errors propagate to the caller.
        """
        user_ids = await self.payments.find_user_ids_by_subscription(subscription_id)
        return user_ids[0] if user_ids else None

    async def find_by_customer_role_email(self, customer_id: Optional[str]) -> Optional[UUID]:
        """Stripe customer email matched against ``user_roles`` only. Best effort."""
        if not customer_id:
            return None
        try:
            customer = await self.stripe.retrieve_customer(customer_id)
            email = customer_email(customer)
            if not email:
                return None
            return await self.user_roles.find_user_id_by_email(email)
        except Exception as e:
            logger.error("resolve_by_customer_role_email_failed", customer_id=customer_id, error=str(e))
            return None

    def _found(self, user_id: UUID, strategy: str, log) -> ResolvedUser:
        log.info("subscription_user_resolved", user_id=str(user_id), strategy=strategy)
        self.metrics.user_resolutions.labels(strategy=strategy).inc()
        return ResolvedUser(user_id=user_id, strategy=strategy)

    async def _by_subscription(self, subscription_id: Optional[str], log) -> Optional[UUID]:
        if not subscription_id:
            return None
        try:
            user_ids = await self.payments.find_user_ids_by_subscription(subscription_id)
        except Exception as e:
            log.error("resolve_by_subscription_failed", error=str(e))
            return None

        if len(user_ids) > 1:
            log.info("multiple_payments_for_subscription", count=len(user_ids))
        return user_ids[0] if user_ids else None

    async def _by_payment_email(self, email: str, log) -> Optional[UUID]:
        try:
            user_ids = await self.payments.find_user_ids_by_email(email)
        except Exception as e:
            log.error("resolve_by_customer_email_failed", error=str(e))
            return None
        return user_ids[0] if user_ids else None

    async def _by_stripe_customer(
        self,
        subscription_id: Optional[str],
        customer_id: str,
        log
    ) -> Optional[UUID]:
        try:
            customer = await self.stripe.retrieve_customer(customer_id)
        except Exception as e:
            log.error("stripe_customer_retrieve_failed", error=str(e))
            return None

        email = customer_email(customer)
        if not email:
            log.info("stripe_customer_has_no_email")
            return None

        user_id = None
        try:
            user_id = await self.user_roles.find_user_id_by_email(email)
        except Exception as e:
            log.error("resolve_by_user_roles_email_failed", error=str(e))

        if not user_id:
            try:
                user_id = await self.auth_users.find_user_id_by_email(email)
            except Exception as e:
                log.error("resolve_by_auth_users_email_failed", error=str(e))

        if not user_id:
            return None

        if subscription_id:
            try:
                await self.payments.create_payment(user_id, subscription_id, email)
            except Exception as e:
                log.error("payment_backfill_failed", user_id=str(user_id), error=str(e))

        return user_id
