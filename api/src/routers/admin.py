"""
Admin router for subscription support.

Provides REST API endpoints for:
- Listing user roles
- Setting a user's role by hand
- Re-syncing a role from a Stripe subscription

All endpoints require the admin role.
"""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.src.dependencies import (
    PaginationParams,
    get_pagination_params,
    get_role_service,
    get_user_role_repository,
    get_webhook_processor,
    require_admin,
)
from api.src.exceptions import BillingError
from api.src.models.auth import CurrentUser, ErrorResponse
from api.src.models.billing import RoleUpdateResult, UpdateRoleRequest, UserRoleListResponse
from api.src.repositories.user_role_repo import UserRoleRepository
from api.src.services.role_service import RoleService
from api.src.services.webhook_service import StripeWebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        403: {"model": ErrorResponse, "description": "Forbidden"},
        404: {"model": ErrorResponse, "description": "Not Found"},
        422: {"model": ErrorResponse, "description": "Validation Error"}
    }
)


@router.get(
    "/users",
    response_model=UserRoleListResponse,
    summary="List User Roles",
    description="""
    List user role rows, newest first.

    **Authentication:** Required (admin role)

    **Query Parameters:**
    - search: case-insensitive email substring
    - limit / offset: pagination
    """
)
async def list_users(
    search: Optional[str] = Query(default=None, max_length=255),
    pagination: PaginationParams = Depends(get_pagination_params),
    admin: CurrentUser = Depends(require_admin),
    user_roles: UserRoleRepository = Depends(get_user_role_repository)
) -> UserRoleListResponse:
    try:
        # one extra row tells whether another page exists
        rows = await user_roles.list_user_roles(
            limit=pagination.limit + 1,
            offset=pagination.offset,
            search=search
        )
        return UserRoleListResponse(
            items=rows[:pagination.limit],
            limit=pagination.limit,
            offset=pagination.offset,
            has_more=len(rows) > pagination.limit
        )
    except Exception as e:
        logger.error("list_user_roles_error", error=str(e), admin_id=str(admin.id))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list users"
        )


@router.put(
    "/users/{user_id}/role",
    response_model=RoleUpdateResult,
    summary="Set User Role",
    description="""
    Set a user's role directly, bypassing Stripe.

    **Authentication:** Required (admin role)
    """
)
async def set_user_role(
    user_id: UUID,
    body: UpdateRoleRequest,
    admin: CurrentUser = Depends(require_admin),
    role_service: RoleService = Depends(get_role_service)
) -> RoleUpdateResult:
    try:
        result = await role_service.apply_role(user_id, body.role)
        await role_service.sync_auth_metadata(user_id, result.role)

        logger.info(
            "admin_role_set",
            admin_id=str(admin.id),
            user_id=str(user_id),
            role=result.role.value,
            previous_role=result.previous_role
        )
        return result

    except Exception as e:
        logger.error("admin_role_set_error", error=str(e), user_id=str(user_id))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update user role"
        )


@router.post(
    "/subscriptions/{subscription_id}/resync",
    response_model=RoleUpdateResult,
    summary="Re-sync Subscription Role",
    description="""
    Re-apply the role granted by a Stripe subscription's current price to
    the subscription's user.

    **Authentication:** Required (admin role)

    **Error Responses:**
    - 400: The subscription's price is not mapped to a plan
    - 404: No user found for the subscription
    """
)
async def resync_subscription(
    subscription_id: str,
    admin: CurrentUser = Depends(require_admin),
    processor: StripeWebhookProcessor = Depends(get_webhook_processor)
) -> RoleUpdateResult:
    try:
        result = await processor.force_resync(subscription_id)
        logger.info(
            "admin_subscription_resynced",
            admin_id=str(admin.id),
            subscription_id=subscription_id,
            role=result.role.value
        )
        return result

    except BillingError as e:
        raise e.to_http()
    except Exception as e:
        logger.error("admin_resync_error", error=str(e), subscription_id=subscription_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to re-sync subscription"
        )
