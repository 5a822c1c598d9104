"""
FastAPI dependency injection for database, authentication, and services.

Provides injectable dependencies for:
- Database connections (asyncpg pool)
- User authentication (Supabase JWT validation)
- Authorization (admin checks)
- Repository and service instances

All dependencies use FastAPI's dependency injection system so tests can
replace any layer through ``app.dependency_overrides``.
"""

from functools import lru_cache
from typing import Optional

import asyncpg
import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.src.config import get_settings
from api.src.models.auth import CurrentUser
from api.src.repositories.auth_user_repo import AuthUserRepository
from api.src.repositories.payment_repo import PaymentRepository
from api.src.repositories.user_role_repo import UserRoleRepository
from api.src.services.auth_service import AuthService
from api.src.services.billing_service import BillingService
from api.src.services.email_service import SubscriptionEmailService
from api.src.services.role_service import RoleService
from api.src.services.stripe_gateway import StripeGateway
from api.src.services.user_resolver import SubscriptionUserResolver
from api.src.services.webhook_service import StripeWebhookProcessor
from shared.logging import bind_context

logger = structlog.get_logger(__name__)

# Missing headers are reported by get_current_user, not by the scheme
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# DATABASE CONNECTION POOL
# ============================================================================

_pool: Optional[asyncpg.Pool] = None

# Set at startup from a pg_proc lookup
_role_function_available: bool = True


async def init_db_pool() -> asyncpg.Pool:
    """
    Initialize database connection pool.

    Should be called during application startup.

    Returns:
        asyncpg connection pool
    """
    global _pool

    if _pool is not None:
        return _pool

    settings = get_settings()

    try:
        _pool = await asyncpg.create_pool(
            settings.database_dsn,
            min_size=settings.database_pool_min_size,
            max_size=settings.database_pool_max_size,
            command_timeout=settings.database_command_timeout
        )

        logger.info(
            "database_pool_initialized",
            min_size=settings.database_pool_min_size,
            max_size=settings.database_pool_max_size,
            database=settings.database_dsn.split("@")[-1]
        )

        return _pool

    except Exception as e:
        logger.error("database_pool_init_failed", error=str(e))
        raise


async def close_db_pool():
    """
    Close database connection pool.

    Should be called during application shutdown.
    """
    global _pool

    if _pool is not None:
        await _pool.close()
        logger.info("database_pool_closed")
        _pool = None


def get_db_pool() -> asyncpg.Pool:
    """
    Get database connection pool.

    Raises:
        RuntimeError: If pool is not initialized
    """
    if _pool is None:
        logger.error("database_pool_not_initialized")
        raise RuntimeError(
            "Database pool not initialized. Call init_db_pool() during startup."
        )
    return _pool


async def check_role_function(pool: asyncpg.Pool) -> bool:
    """
    Record whether ``public.update_user_role`` exists.

    Called once at startup. When the function is missing, role updates skip
    the function fallback and surface the direct-update error instead.
    """
    global _role_function_available

    try:
        _role_function_available = await UserRoleRepository(pool).role_function_exists()
    except Exception as e:
        logger.error("role_function_check_error", error=str(e))
        _role_function_available = False

    if not _role_function_available:
        logger.error("role_function_missing", function="public.update_user_role")
    return _role_function_available


# ============================================================================
# REPOSITORY DEPENDENCIES
# ============================================================================


def get_user_role_repository(pool: asyncpg.Pool = Depends(get_db_pool)) -> UserRoleRepository:
    return UserRoleRepository(pool)


def get_payment_repository(pool: asyncpg.Pool = Depends(get_db_pool)) -> PaymentRepository:
    return PaymentRepository(pool)


def get_auth_user_repository(pool: asyncpg.Pool = Depends(get_db_pool)) -> AuthUserRepository:
    return AuthUserRepository(pool)


# ============================================================================
# SERVICE DEPENDENCIES
# ============================================================================


@lru_cache()
def get_stripe_gateway() -> StripeGateway:
    """Stripe gateway (cached; the SDK client is thread safe)."""
    return StripeGateway()


@lru_cache()
def get_email_service() -> SubscriptionEmailService:
    """Email service (cached; templates are loaded once)."""
    return SubscriptionEmailService()


def get_auth_service(
    user_roles: UserRoleRepository = Depends(get_user_role_repository)
) -> AuthService:
    return AuthService(user_roles)


def get_role_service(
    user_roles: UserRoleRepository = Depends(get_user_role_repository),
    auth_users: AuthUserRepository = Depends(get_auth_user_repository)
) -> RoleService:
    return RoleService(user_roles, auth_users, role_function_available=_role_function_available)


def get_user_resolver(
    payments: PaymentRepository = Depends(get_payment_repository),
    user_roles: UserRoleRepository = Depends(get_user_role_repository),
    auth_users: AuthUserRepository = Depends(get_auth_user_repository),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway)
) -> SubscriptionUserResolver:
    return SubscriptionUserResolver(payments, user_roles, auth_users, stripe_gateway)


def get_webhook_processor(
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
    role_service: RoleService = Depends(get_role_service),
    resolver: SubscriptionUserResolver = Depends(get_user_resolver),
    payments: PaymentRepository = Depends(get_payment_repository),
    user_roles: UserRoleRepository = Depends(get_user_role_repository),
    auth_users: AuthUserRepository = Depends(get_auth_user_repository),
    email: SubscriptionEmailService = Depends(get_email_service)
) -> StripeWebhookProcessor:
    """
    Get webhook processor wired to the request's repositories.

    Returns:
        Stripe webhook processor
    """
    return StripeWebhookProcessor(
        stripe_gateway,
        role_service,
        resolver,
        payments,
        user_roles,
        auth_users,
        email
    )


def get_billing_service(
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
    role_service: RoleService = Depends(get_role_service),
    user_roles: UserRoleRepository = Depends(get_user_role_repository),
    auth_users: AuthUserRepository = Depends(get_auth_user_repository)
) -> BillingService:
    return BillingService(
        stripe_gateway,
        role_service,
        user_roles,
        auth_users,
        site_url=get_settings().site_url
    )


# ============================================================================
# AUTHENTICATION DEPENDENCIES
# ============================================================================


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


async def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> str:
    # resolved before any database-backed dependency, so anonymous calls get 401
    if credentials is None:
        logger.info("auth_missing_credentials")
        raise _unauthorized("Missing authentication credentials")
    return credentials.credentials


async def get_current_user(
    token: str = Depends(get_bearer_token),
    auth_service: AuthService = Depends(get_auth_service)
) -> CurrentUser:
    """
    Resolve the caller from a Supabase access token.

    The role comes from ``public.user_roles``, not from the token claims, so
    an upgrade applied by a webhook is visible on the next request.

    Raises:
        HTTPException: 401 when the header is missing or the token is rejected

    Example:
        @router.get("/subscription")
        async def details(user: CurrentUser = Depends(get_current_user)):
            return {"user_id": str(user.id), "role": user.role}
    """
    try:
        current_user = await auth_service.get_current_user(token)
    except Exception as e:
        logger.error("auth_error", error=str(e))
        raise _unauthorized("Authentication failed")

    if current_user is None:
        logger.info("auth_invalid_token")
        raise _unauthorized("Invalid authentication token")

    bind_context(user_id=str(current_user.id))
    return current_user


async def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.is_admin:
        logger.warning("admin_required", user_id=str(current_user.id), role=current_user.role.value)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return current_user


# ============================================================================
# REQUEST DEPENDENCIES
# ============================================================================


async def get_request_origin(request: Request) -> Optional[str]:
    """Origin of the calling site, used for checkout redirect URLs."""
    return request.headers.get("Origin")


class PaginationParams:
    """Limit and offset for list endpoints, clamped to the configured range."""

    def __init__(self, limit: Optional[int] = None, offset: int = 0):
        settings = get_settings()
        if limit is None:
            limit = settings.pagination_default_limit
        self.limit = min(max(limit, 1), settings.pagination_max_limit)
        self.offset = max(offset, 0)


async def get_pagination_params(limit: Optional[int] = None, offset: int = 0) -> PaginationParams:
    return PaginationParams(limit=limit, offset=offset)
