"""
Role reconciliation service.

Writes a user's subscription role to ``user_roles`` and verifies the write,
falling back to the ``update_user_role`` database function when a direct
update is rejected. Also mirrors the role into the auth user's metadata so
the client can pick it up without a fresh sign-in.
"""

from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID

import asyncpg
import structlog

from api.src.models.billing import AuthUser, RoleUpdateResult
from api.src.models.plans import Role, normalize_role
from api.src.repositories.auth_user_repo import AuthUserRepository
from api.src.repositories.user_role_repo import UserRoleRepository
from shared.metrics import get_billing_metrics

logger = structlog.get_logger(__name__)


class RoleService:
    """Service for writing and verifying user subscription roles."""

    def __init__(
        self,
        user_roles: UserRoleRepository,
        auth_users: AuthUserRepository,
        role_function_available: bool = True
    ):
        """
        Initialize role service.

        Args:
            user_roles: Repository for ``user_roles``
            auth_users: Repository for ``auth.users``
            role_function_available: Whether ``update_user_role`` exists
                (checked once at startup)
        """
        self.user_roles = user_roles
        self.auth_users = auth_users
        self.role_function_available = role_function_available
        self.metrics = get_billing_metrics()

    async def apply_role(
        self,
        user_id: UUID,
        role: Union[Role, str, None],
        email: Optional[str] = None
    ) -> RoleUpdateResult:
        """
        Set a user's role, creating the row if needed.

        Args:
            user_id: Auth user ID
            role: Target role; unknown values are written as ``nosubs``
            email: Stored on the row when it is created

        Returns:
            RoleUpdateResult with the previous role and whether the stored
            value was read back as the target role

        Raises:
            asyncpg.PostgresError: If the row can be neither written directly
                nor through the database function
        """
        requested = role.value if isinstance(role, Role) else role
        target = normalize_role(requested)
        if requested and target.value != requested:
            logger.warning("invalid_role_normalized", user_id=str(user_id), requested=requested)

        existing = await self.user_roles.get_role(user_id)
        previous_role = existing.role if existing else None
        created = False
        outcome = "updated"

        if existing is None:
            try:
                await self.user_roles.insert_role(user_id, target.value, email)
                created = True
                outcome = "created"
            except asyncpg.UniqueViolationError:
                # row appeared between the read and the insert
                logger.info("user_role_insert_race", user_id=str(user_id))
                await self._update(user_id, target)
        else:
            logger.info(
                "user_role_changing",
                user_id=str(user_id),
                previous_role=previous_role,
                role=target.value
            )
            if await self._update(user_id, target):
                outcome = "fallback"

        verified = await self._verify(user_id, target)
        if not verified:
            outcome = "unverified"

        self.metrics.role_updates.labels(role=target.value, outcome=outcome).inc()

        return RoleUpdateResult(
            user_id=user_id,
            role=target,
            previous_role=previous_role,
            created=created,
            verified=verified
        )

    async def revoke(self, user_id: UUID) -> RoleUpdateResult:
        """Downgrade a user to ``nosubs``."""
        return await self.apply_role(user_id, Role.NOSUBS)

    async def sync_auth_metadata(self, user_id: UUID, role: Union[Role, str]) -> Optional[AuthUser]:
        """
        Merge ``role`` and ``role_updated_at`` into the auth user's metadata.

        Best effort: failures are logged and None is returned.
        """
        value = role.value if isinstance(role, Role) else role
        try:
            return await self.auth_users.merge_metadata(
                user_id,
                {
                    "role": value,
                    "role_updated_at": datetime.now(timezone.utc).isoformat(),
                }
            )
        except Exception as e:
            logger.error("auth_metadata_sync_failed", user_id=str(user_id), role=value, error=str(e))
            return None

    async def _update(self, user_id: UUID, role: Role) -> bool:
        """Direct update with function fallback. Returns True if the fallback was used."""
        try:
            await self.user_roles.update_role(user_id, role.value)
            return False
        except asyncpg.PostgresError as e:
            if not self.role_function_available:
                logger.error(
                    "user_role_update_failed_no_fallback",
                    user_id=str(user_id),
                    role=role.value,
                    error=str(e)
                )
                raise

            logger.warning(
                "user_role_direct_update_failed",
                user_id=str(user_id),
                role=role.value,
                error=str(e)
            )
            await self.user_roles.call_update_role_function(user_id, role.value)
            return True

    async def _verify(self, user_id: UUID, role: Role) -> bool:
        """Read the role back; on mismatch retry one direct update."""
        try:
            stored = await self.user_roles.get_role(user_id)
        except Exception as e:
            logger.error("user_role_verify_failed", user_id=str(user_id), error=str(e))
            return False

        if stored is not None and stored.role == role.value:
            return True

        logger.error(
            "user_role_mismatch",
            user_id=str(user_id),
            expected=role.value,
            found=stored.role if stored else None
        )

        try:
            retried = await self.user_roles.update_role(user_id, role.value)
        except Exception as e:
            logger.error("user_role_retry_failed", user_id=str(user_id), error=str(e))
            return False

        return retried is not None and retried.role == role.value
