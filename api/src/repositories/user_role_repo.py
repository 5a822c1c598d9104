"""
User role repository for database operations.

Reads and writes ``public.user_roles``, which holds exactly one subscription
role per auth user, and the ``role_update_notifications`` table the web
client listens on after checkout.
"""

from typing import List, Optional
from uuid import UUID

import asyncpg
import structlog

from api.src.models.billing import UserRoleRecord

logger = structlog.get_logger(__name__)

_ROLE_COLUMNS = "user_id, role::text AS role, email, created_at, updated_at"


def _to_record(row: asyncpg.Record) -> UserRoleRecord:
    return UserRoleRecord(
        user_id=row["user_id"],
        role=row["role"],
        email=row["email"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class UserRoleRepository:
    """Repository for ``user_roles`` operations."""

    def __init__(self, pool: asyncpg.Pool):
        """
        Initialize user role repository.

        Args:
            pool: asyncpg connection pool
        """
        self.pool = pool

    async def get_role(self, user_id: UUID) -> Optional[UserRoleRecord]:
        """
        Get the role row for a user.

        Args:
            user_id: Auth user ID

        Returns:
            Role record or None if the user has no row yet
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_ROLE_COLUMNS}
                    FROM public.user_roles
                    WHERE user_id = $1
                    """,
                    user_id
                )

                if not row:
                    logger.debug("user_role_not_found", user_id=str(user_id))
                    return None

                return _to_record(row)

        except Exception as e:
            logger.error("user_role_get_failed", error=str(e), user_id=str(user_id))
            raise

    async def find_user_id_by_email(self, email: str) -> Optional[UUID]:
        """Find the user whose role row carries this email (case-insensitive)."""
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval(
                    """
                    SELECT user_id
                    FROM public.user_roles
                    WHERE lower(email) = lower($1)
                    LIMIT 1
                    """,
                    email
                )

        except Exception as e:
            logger.error("user_role_email_lookup_failed", error=str(e), email=email)
            raise

    async def insert_role(
        self,
        user_id: UUID,
        role: str,
        email: Optional[str] = None
    ) -> UserRoleRecord:
        """
        Create the role row for a user.

        Args:
            user_id: Auth user ID
            role: Role value
            email: Email to store alongside the role

        Returns:
            Created role record

        Raises:
            asyncpg.PostgresError: On database error (including duplicates)
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO public.user_roles (user_id, role, email, created_at, updated_at)
                    VALUES ($1, $2, $3, NOW(), NOW())
                    RETURNING {_ROLE_COLUMNS}
                    """,
                    user_id,
                    role,
                    email
                )

                logger.info("user_role_created", user_id=str(user_id), role=role)
                return _to_record(row)

        except Exception as e:
            logger.error("user_role_create_failed", error=str(e), user_id=str(user_id), role=role)
            raise

    async def update_role(self, user_id: UUID, role: str) -> Optional[UserRoleRecord]:
        """
        Update the role of an existing row.

        Returns:
            Updated record, or None if the user has no row
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE public.user_roles
                    SET role = $2, updated_at = NOW()
                    WHERE user_id = $1
                    RETURNING {_ROLE_COLUMNS}
                    """,
                    user_id,
                    role
                )

                if not row:
                    logger.warning("user_role_update_no_row", user_id=str(user_id), role=role)
                    return None

                logger.info("user_role_updated", user_id=str(user_id), role=role)
                return _to_record(row)

        except Exception as e:
            logger.error("user_role_update_failed", error=str(e), user_id=str(user_id), role=role)
            raise

    async def call_update_role_function(self, user_id: UUID, role: str) -> None:
        """
        Update the role through the ``public.update_user_role`` database function.

        The function runs with definer rights and is the fallback when a direct
        update is rejected.
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    "SELECT public.update_user_role($1, $2)",
                    user_id,
                    role
                )

                logger.info("user_role_updated_via_function", user_id=str(user_id), role=role)

        except Exception as e:
            logger.error(
                "user_role_function_failed",
                error=str(e),
                user_id=str(user_id),
                role=role
            )
            raise

    async def role_function_exists(self) -> bool:
        """Check that ``public.update_user_role`` is installed."""
        try:
            async with self.pool.acquire() as conn:
                exists = await conn.fetchval(
                    """
                    SELECT EXISTS (
                        SELECT 1
                        FROM pg_proc p
                        JOIN pg_namespace n ON n.oid = p.pronamespace
                        WHERE n.nspname = 'public' AND p.proname = 'update_user_role'
                    )
                    """
                )
                return bool(exists)

        except Exception as e:
            logger.error("role_function_check_failed", error=str(e))
            raise

    async def create_role_update_notification(self, user_id: UUID, role: str) -> None:
        """Insert an unprocessed ``role_update_notifications`` row for the client."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO public.role_update_notifications (user_id, role, created_at, processed)
                    VALUES ($1, $2, NOW(), FALSE)
                    """,
                    user_id,
                    role
                )

                logger.info("role_update_notification_created", user_id=str(user_id), role=role)

        except Exception as e:
            logger.error(
                "role_update_notification_failed",
                error=str(e),
                user_id=str(user_id),
                role=role
            )
            raise

    async def list_user_roles(
        self,
        limit: int = 50,
        offset: int = 0,
        search: Optional[str] = None
    ) -> List[UserRoleRecord]:
        """
        List role rows, newest first.

        Args:
            limit: Maximum rows to return
            offset: Rows to skip
            search: Optional case-insensitive email substring

        Returns:
            List of role records
        """
        try:
            async with self.pool.acquire() as conn:
                if search:
                    rows = await conn.fetch(
                        f"""
                        SELECT {_ROLE_COLUMNS}
                        FROM public.user_roles
                        WHERE email ILIKE $1
                        ORDER BY created_at DESC
                        LIMIT $2 OFFSET $3
                        """,
                        f"%{search}%",
                        limit,
                        offset
                    )
                else:
                    rows = await conn.fetch(
                        f"""
                        SELECT {_ROLE_COLUMNS}
                        FROM public.user_roles
                        ORDER BY created_at DESC
                        LIMIT $1 OFFSET $2
                        """,
                        limit,
                        offset
                    )

                return [_to_record(row) for row in rows]

        except Exception as e:
            logger.error("user_roles_list_failed", error=str(e))
            raise
