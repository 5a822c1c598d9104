"""
Auth user repository.

Reads the Supabase ``auth.users`` table directly and merges keys into
``raw_user_meta_data`` so the client sees role changes without signing in
again.
"""

import json
from typing import Any, Dict, Optional
from uuid import UUID

import asyncpg
import structlog

from api.src.models.billing import AuthUser

logger = structlog.get_logger(__name__)


def _metadata(value: Any) -> Dict[str, Any]:
    # asyncpg returns jsonb as text unless a codec is registered
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value) or {}
    return dict(value)


class AuthUserRepository:
    """Repository for ``auth.users`` lookups and metadata updates."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get_user(self, user_id: UUID) -> Optional[AuthUser]:
        """
        Get an auth user by ID.

        Returns:
            AuthUser with email and user metadata, or None if not found
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT id, email, raw_user_meta_data
                    FROM auth.users
                    WHERE id = $1
                    """,
                    user_id
                )

                if not row:
                    logger.debug("auth_user_not_found", user_id=str(user_id))
                    return None

                return AuthUser(
                    id=row["id"],
                    email=row["email"],
                    metadata=_metadata(row["raw_user_meta_data"])
                )

        except Exception as e:
            logger.error("auth_user_get_failed", error=str(e), user_id=str(user_id))
            raise

    async def find_user_id_by_email(self, email: str) -> Optional[UUID]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval(
                    """
                    SELECT id
                    FROM auth.users
                    WHERE lower(email) = lower($1)
                    LIMIT 1
                    """,
                    email
                )

        except Exception as e:
            logger.error("auth_user_email_lookup_failed", error=str(e), email=email)
            raise

    async def merge_metadata(self, user_id: UUID, patch: Dict[str, Any]) -> Optional[AuthUser]:
        """
        Merge keys into the user's metadata.

        Args:
            user_id: Auth user ID
            patch: Keys to set; existing keys not in the patch are kept

        Returns:
            Updated user, or None if the user does not exist
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE auth.users
                    SET raw_user_meta_data = COALESCE(raw_user_meta_data, '{}'::jsonb) || $2::jsonb,
                        updated_at = NOW()
                    WHERE id = $1
                    RETURNING id, email, raw_user_meta_data
                    """,
                    user_id,
                    json.dumps(patch)
                )

                if not row:
                    logger.warning("auth_user_metadata_no_user", user_id=str(user_id))
                    return None

                logger.info("auth_user_metadata_merged", user_id=str(user_id), keys=sorted(patch))
                return AuthUser(
                    id=row["id"],
                    email=row["email"],
                    metadata=_metadata(row["raw_user_meta_data"])
                )

        except Exception as e:
            logger.error("auth_user_metadata_merge_failed", error=str(e), user_id=str(user_id))
            raise
