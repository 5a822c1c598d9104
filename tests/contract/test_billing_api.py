"""
Contract tests for the billing, admin and health endpoints.

Tests verify the API contract the web client relies on:
- camelCase request and response fields
- HTTP status codes and ``X-Error-Code`` headers for billing errors
- Authentication and admin requirements

Services are replaced through ``app.dependency_overrides``; no database or
Stripe access happens.
"""

from datetime import datetime, timezone
from uuid import uuid4
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from api.src.dependencies import (
    get_billing_service,
    get_current_user,
    get_role_service,
    get_user_role_repository,
    get_webhook_processor,
    require_admin,
)
from api.src.exceptions import (
    CheckoutSessionNotFoundError,
    InvalidPlanError,
    NoActiveSubscriptionError,
    UserNotFoundError,
)
from api.src.main import app
from api.src.models.auth import CurrentUser
from api.src.models.billing import (
    CheckoutResponse,
    Invoice,
    PaymentStatusResponse,
    RoleUpdateResult,
    SubscriptionDetails,
    SubscriptionSummary,
    UserRoleRecord,
)
from api.src.models.plans import Role

API = "/api/v1"


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def user():
    return CurrentUser(id=uuid4(), email="ada@example.com", role=Role.TIER1)


@pytest.fixture
def admin():
    return CurrentUser(id=uuid4(), email="ops@zaparound.com", role=Role.ADMIN)


@pytest.fixture
def billing_service():
    return AsyncMock()


@pytest.fixture
def client(user, billing_service):
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_billing_service] = lambda: billing_service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client():
    yield TestClient(app)
    app.dependency_overrides.clear()


# ============================================================================
# CHECKOUT
# ============================================================================


class TestCheckoutContract:
    """Contract tests for POST /api/v1/billing/checkout."""

    def test_creates_session(self, client, billing_service, user):
        billing_service.create_checkout_session.return_value = CheckoutResponse(
            session_id="cs_123", url="https://checkout.stripe.com/c/cs_123"
        )

        response = client.post(
            f"{API}/billing/checkout",
            json={"plan": "zaptrip", "isYearly": True, "returnUrl": "/trips"},
            headers={"Origin": "http://localhost:8080"}
        )

        assert response.status_code == 200
        assert response.json() == {"sessionId": "cs_123", "url": "https://checkout.stripe.com/c/cs_123"}
        billing_service.create_checkout_session.assert_awaited_once_with(
            user, "zaptrip", True, origin="http://localhost:8080", return_url="/trips"
        )

    def test_invalid_plan(self, client, billing_service):
        billing_service.create_checkout_session.side_effect = InvalidPlanError("Invalid plan selected")

        response = client.post(f"{API}/billing/checkout", json={"plan": "zapgold"})

        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid plan selected"}
        assert response.headers["X-Error-Code"] == "BILLING_001"

    def test_missing_plan_is_422(self, client):
        response = client.post(f"{API}/billing/checkout", json={"isYearly": True})

        assert response.status_code == 422
        assert response.json()["detail"][0]["loc"] == ["body", "plan"]

    def test_unexpected_error_is_500(self, client, billing_service):
        billing_service.create_checkout_session.side_effect = RuntimeError("stripe unavailable")

        response = client.post(f"{API}/billing/checkout", json={"plan": "zaptrip"})

        assert response.status_code == 500
        assert response.json() == {"detail": "Failed to create checkout session"}

    def test_requires_authentication(self, anonymous_client):
        response = anonymous_client.post(f"{API}/billing/checkout", json={"plan": "zaptrip"})

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"


class TestPaymentStatusContract:
    """Contract tests for POST /api/v1/billing/payment-status."""

    def test_paid_session(self, client, billing_service, user):
        billing_service.check_payment_status.return_value = PaymentStatusResponse(
            status="paid",
            role="tier1",
            customer="cus_123",
            subscription="sub_123",
            subscription_details=SubscriptionSummary(
                id="sub_123",
                status="active",
                current_period_end=datetime(2026, 1, 1, tzinfo=timezone.utc),
            ),
            metadata={"plan": "zaptrip"},
        )

        response = client.post(f"{API}/billing/payment-status", json={"sessionId": "cs_123"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "paid"
        assert body["role"] == "tier1"
        assert body["subscriptionDetails"]["id"] == "sub_123"
        assert body["subscriptionDetails"]["cancelAtPeriodEnd"] is False
        assert body["subscriptionDetails"]["currentPeriodEnd"].startswith("2026-01-01T00:00:00")
        billing_service.check_payment_status.assert_awaited_once_with("cs_123", user)

    def test_unknown_session(self, client, billing_service):
        billing_service.check_payment_status.side_effect = CheckoutSessionNotFoundError(
            "Checkout session not found"
        )

        response = client.post(f"{API}/billing/payment-status", json={"sessionId": "cs_missing"})

        assert response.status_code == 404
        assert response.headers["X-Error-Code"] == "BILLING_004"

    def test_session_id_required(self, client):
        response = client.post(f"{API}/billing/payment-status", json={"sessionId": ""})
        assert response.status_code == 422


# ============================================================================
# SUBSCRIPTION MANAGEMENT
# ============================================================================


class TestSubscriptionContract:
    """Contract tests for /api/v1/billing/subscription endpoints."""

    def test_details(self, client, billing_service):
        billing_service.subscription_details.return_value = SubscriptionDetails(
            id="sub_123", status="active", plan="zaptrip", interval="month"
        )

        response = client.get(f"{API}/billing/subscription")

        assert response.status_code == 200
        subscription = response.json()["subscription"]
        assert subscription["plan"] == "zaptrip"
        assert subscription["interval"] == "month"
        assert subscription["paymentMethod"] is None

    def test_no_subscription(self, client, billing_service):
        billing_service.subscription_details.return_value = None

        response = client.get(f"{API}/billing/subscription")

        assert response.status_code == 200
        assert response.json() == {"subscription": None}

    def test_unknown_user(self, client, billing_service):
        billing_service.subscription_details.side_effect = UserNotFoundError("User not found")

        response = client.get(f"{API}/billing/subscription")

        assert response.status_code == 404
        assert response.headers["X-Error-Code"] == "BILLING_002"

    def test_change_plan(self, client, billing_service, user):
        billing_service.change_plan.return_value = SubscriptionSummary(
            id="sub_123", status="active", plan="zappro", interval="year"
        )

        response = client.post(
            f"{API}/billing/subscription/change-plan",
            json={"planId": "zappro", "isYearly": True}
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["subscription"]["plan"] == "zappro"
        billing_service.change_plan.assert_awaited_once_with(user.id, "zappro", True)

    def test_change_plan_without_subscription(self, client, billing_service):
        billing_service.change_plan.side_effect = NoActiveSubscriptionError("No active subscription")

        response = client.post(f"{API}/billing/subscription/change-plan", json={"planId": "zappro"})

        assert response.status_code == 400
        assert response.json() == {"detail": "No active subscription"}
        assert response.headers["X-Error-Code"] == "BILLING_003"

    def test_cancel(self, client, billing_service):
        billing_service.cancel_subscription.return_value = SubscriptionSummary(
            id="sub_123", status="active", cancel_at_period_end=True
        )

        response = client.post(f"{API}/billing/subscription/cancel")

        assert response.status_code == 200
        assert response.json()["subscription"]["cancelAtPeriodEnd"] is True

    def test_reactivate(self, client, billing_service):
        billing_service.reactivate_subscription.return_value = SubscriptionSummary(
            id="sub_123", status="active"
        )

        response = client.post(f"{API}/billing/subscription/reactivate")

        assert response.status_code == 200
        assert response.json()["subscription"]["cancelAtPeriodEnd"] is False

    def test_history(self, client, billing_service, user):
        billing_service.billing_history.return_value = [
            Invoice(id="in_1", amount_paid=12.99, currency="usd", paid=True)
        ]

        response = client.get(f"{API}/billing/history", params={"limit": 5})

        assert response.status_code == 200
        assert response.json()["invoices"][0]["amount_paid"] == 12.99
        billing_service.billing_history.assert_awaited_once_with(user.id, limit=5)

    @pytest.mark.parametrize("limit", [0, 101])
    def test_history_limit_bounds(self, client, limit):
        response = client.get(f"{API}/billing/history", params={"limit": limit})
        assert response.status_code == 422


# ============================================================================
# ADMIN
# ============================================================================


class TestAdminContract:
    """Contract tests for /api/v1/admin endpoints."""

    @pytest.fixture
    def user_roles(self):
        return AsyncMock()

    @pytest.fixture
    def role_service(self):
        return AsyncMock()

    @pytest.fixture
    def processor(self):
        return AsyncMock()

    @pytest.fixture
    def admin_client(self, admin, user_roles, role_service, processor):
        app.dependency_overrides[require_admin] = lambda: admin
        app.dependency_overrides[get_user_role_repository] = lambda: user_roles
        app.dependency_overrides[get_role_service] = lambda: role_service
        app.dependency_overrides[get_webhook_processor] = lambda: processor
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_list_users_pages(self, admin_client, user_roles):
        user_roles.list_user_roles.return_value = [
            UserRoleRecord(user_id=uuid4(), role="tier1", email=f"user{i}@example.com")
            for i in range(3)
        ]

        response = admin_client.get(f"{API}/admin/users", params={"limit": 2, "search": "example"})

        assert response.status_code == 200
        body = response.json()
        assert len(body["items"]) == 2
        assert body["has_more"] is True
        user_roles.list_user_roles.assert_awaited_once_with(limit=3, offset=0, search="example")

    def test_set_role(self, admin_client, role_service):
        user_id = uuid4()
        role_service.apply_role.return_value = RoleUpdateResult(
            user_id=user_id, role=Role.TIER4, previous_role="tier1", verified=True
        )

        response = admin_client.put(f"{API}/admin/users/{user_id}/role", json={"role": "tier4"})

        assert response.status_code == 200
        assert response.json()["role"] == "tier4"
        role_service.apply_role.assert_awaited_once_with(user_id, Role.TIER4)
        role_service.sync_auth_metadata.assert_awaited_once_with(user_id, Role.TIER4)

    def test_set_unknown_role_is_422(self, admin_client):
        response = admin_client.put(f"{API}/admin/users/{uuid4()}/role", json={"role": "platinum"})
        assert response.status_code == 422

    def test_resync_unmapped_price(self, admin_client, processor):
        processor.force_resync.side_effect = InvalidPlanError("Subscription price is not mapped to a plan")

        response = admin_client.post(f"{API}/admin/subscriptions/sub_123/resync")

        assert response.status_code == 400
        assert response.headers["X-Error-Code"] == "BILLING_001"

    def test_non_admin_is_forbidden(self, user, user_roles):
        app.dependency_overrides[get_current_user] = lambda: user
        app.dependency_overrides[get_user_role_repository] = lambda: user_roles
        try:
            response = TestClient(app).get(f"{API}/admin/users")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 403
        assert response.json() == {"detail": "Admin role required"}


# ============================================================================
# HEALTH
# ============================================================================


class TestHealthContract:

    def test_health(self, anonymous_client):
        response = anonymous_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "X-Correlation-ID" in response.headers

    def test_ready_without_database(self, anonymous_client):
        response = anonymous_client.get("/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["database"] == "unhealthy"

    def test_metrics(self, anonymous_client):
        response = anonymous_client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
