"""
Unit tests for locating the user behind a Stripe subscription.

Tests cover:
- Strategy order: subscription payment, payment email, Stripe customer
- Payment backfill after a Stripe customer match
- Errors in one strategy falling through to the next
- The payments-only and user_roles-only lookups used by webhook handlers
"""

from uuid import uuid4
from unittest.mock import AsyncMock

import pytest

from api.src.services.user_resolver import (
    STRATEGY_CUSTOMER_EMAIL,
    STRATEGY_STRIPE_CUSTOMER,
    STRATEGY_SUBSCRIPTION,
    SubscriptionUserResolver,
)


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def payments():
    repo = AsyncMock()
    repo.find_user_ids_by_subscription.return_value = []
    repo.find_user_ids_by_email.return_value = []
    return repo


@pytest.fixture
def user_roles():
    repo = AsyncMock()
    repo.find_user_id_by_email.return_value = None
    return repo


@pytest.fixture
def auth_users():
    repo = AsyncMock()
    repo.find_user_id_by_email.return_value = None
    return repo


@pytest.fixture
def gateway():
    stripe = AsyncMock()
    stripe.retrieve_customer.return_value = {"id": "cus_123", "email": "ada@example.com"}
    return stripe


@pytest.fixture
def resolver(payments, user_roles, auth_users, gateway):
    return SubscriptionUserResolver(payments, user_roles, auth_users, gateway)


@pytest.fixture
def subscription():
    return {"id": "sub_123", "customer": "cus_123", "customer_email": "ada@example.com"}


class TestResolve:

    @pytest.mark.asyncio
    async def test_subscription_payment_wins(self, resolver, payments, gateway, subscription, user_id):
        payments.find_user_ids_by_subscription.return_value = [user_id, uuid4()]

        resolved = await resolver.resolve(subscription)

        assert resolved.user_id == user_id
        assert resolved.strategy == STRATEGY_SUBSCRIPTION
        payments.find_user_ids_by_email.assert_not_awaited()
        gateway.retrieve_customer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_payment_email(self, resolver, payments, gateway, subscription, user_id):
        payments.find_user_ids_by_email.return_value = [user_id]

        resolved = await resolver.resolve(subscription)

        assert resolved.strategy == STRATEGY_CUSTOMER_EMAIL
        payments.find_user_ids_by_email.assert_awaited_once_with("ada@example.com")
        gateway.retrieve_customer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stripe_customer_via_user_roles(self, resolver, payments, user_roles, auth_users, subscription, user_id):
        user_roles.find_user_id_by_email.return_value = user_id

        resolved = await resolver.resolve(subscription)

        assert resolved.user_id == user_id
        assert resolved.strategy == STRATEGY_STRIPE_CUSTOMER
        auth_users.find_user_id_by_email.assert_not_awaited()
        payments.create_payment.assert_awaited_once_with(user_id, "sub_123", "ada@example.com")

    @pytest.mark.asyncio
    async def test_stripe_customer_via_auth_users(self, resolver, payments, auth_users, subscription, user_id):
        auth_users.find_user_id_by_email.return_value = user_id

        resolved = await resolver.resolve(subscription)

        assert resolved.strategy == STRATEGY_STRIPE_CUSTOMER
        payments.create_payment.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expanded_customer_object(self, resolver, gateway, user_roles, user_id):
        user_roles.find_user_id_by_email.return_value = user_id

        resolved = await resolver.resolve({"id": "sub_9", "customer": {"id": "cus_9"}})

        assert resolved.user_id == user_id
        gateway.retrieve_customer.assert_awaited_once_with("cus_9")

    @pytest.mark.asyncio
    async def test_errors_fall_through(self, resolver, payments, user_roles, auth_users, subscription, user_id):
        payments.find_user_ids_by_subscription.side_effect = ConnectionError("db down")
        payments.find_user_ids_by_email.side_effect = ConnectionError("db down")
        user_roles.find_user_id_by_email.side_effect = ConnectionError("db down")
        auth_users.find_user_id_by_email.return_value = user_id
        payments.create_payment.side_effect = ConnectionError("db down")

        resolved = await resolver.resolve(subscription)

        assert resolved.user_id == user_id
        assert resolved.strategy == STRATEGY_STRIPE_CUSTOMER

    @pytest.mark.asyncio
    async def test_deleted_customer_has_no_email(self, resolver, gateway, user_roles, subscription):
        gateway.retrieve_customer.return_value = {"id": "cus_123", "deleted": True}

        assert await resolver.resolve(subscription) is None
        user_roles.find_user_id_by_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stripe_error_means_not_found(self, resolver, gateway, subscription):
        gateway.retrieve_customer.side_effect = RuntimeError("stripe unavailable")

        assert await resolver.resolve(subscription) is None

    @pytest.mark.asyncio
    async def test_no_match(self, resolver, payments, subscription):
        assert await resolver.resolve(subscription) is None
        payments.create_payment.assert_not_awaited()


class TestDirectLookups:

    @pytest.mark.asyncio
    async def test_find_by_subscription_id(self, resolver, payments, user_id):
        payments.find_user_ids_by_subscription.return_value = [user_id]
        assert await resolver.find_by_subscription_id("sub_123") == user_id

    @pytest.mark.asyncio
    async def test_find_by_subscription_id_propagates_errors(self, resolver, payments):
        payments.find_user_ids_by_subscription.side_effect = ConnectionError("db down")

        with pytest.raises(ConnectionError):
            await resolver.find_by_subscription_id("sub_123")

    @pytest.mark.asyncio
    async def test_find_by_customer_role_email(self, resolver, user_roles, user_id):
        user_roles.find_user_id_by_email.return_value = user_id

        assert await resolver.find_by_customer_role_email("cus_123") == user_id
        user_roles.find_user_id_by_email.assert_awaited_once_with("ada@example.com")

    @pytest.mark.asyncio
    async def test_find_by_customer_role_email_is_best_effort(self, resolver, gateway):
        gateway.retrieve_customer.side_effect = RuntimeError("stripe unavailable")

        assert await resolver.find_by_customer_role_email("cus_123") is None
        assert await resolver.find_by_customer_role_email(None) is None
