"""
Payment repository.

``public.payments`` links a user to the Stripe subscription they bought. It is
the first place the webhook looks when an event names a subscription but not
a user.
"""

from typing import List, Optional
from uuid import UUID

import asyncpg
import structlog

logger = structlog.get_logger(__name__)


class PaymentRepository:
    """Repository for ``payments`` operations."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def create_payment(
        self,
        user_id: UUID,
        subscription_id: Optional[str],
        email: Optional[str],
        subscription_name: Optional[str] = None
    ) -> None:
        """
        Record a subscription purchase.

        Args:
            user_id: Auth user ID
            subscription_id: Stripe subscription ID
            email: Customer email at checkout
            subscription_name: Label such as ``zaptrip-yearly``

        Raises:
            asyncpg.PostgresError: On database error
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO public.payments (user_id, subscription, subscription_name, email, created_at)
                    VALUES ($1, $2, $3, $4, NOW())
                    """,
                    user_id,
                    subscription_id,
                    subscription_name,
                    email
                )

                logger.info(
                    "payment_recorded",
                    user_id=str(user_id),
                    subscription_id=subscription_id,
                    subscription_name=subscription_name
                )

        except Exception as e:
            logger.error(
                "payment_record_failed",
                error=str(e),
                user_id=str(user_id),
                subscription_id=subscription_id
            )
            raise

    async def find_user_ids_by_subscription(self, subscription_id: str) -> List[UUID]:
        """Users with a payment for this subscription, oldest first."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT user_id
                    FROM public.payments
                    WHERE subscription = $1
                    ORDER BY created_at
                    """,
                    subscription_id
                )
                return [row["user_id"] for row in rows]

        except Exception as e:
            logger.error(
                "payment_subscription_lookup_failed",
                error=str(e),
                subscription_id=subscription_id
            )
            raise

    async def find_user_ids_by_email(self, email: str) -> List[UUID]:
        """Users with a payment recorded under this email, oldest first."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT user_id
                    FROM public.payments
                    WHERE lower(email) = lower($1)
                    ORDER BY created_at
                    """,
                    email
                )
                return [row["user_id"] for row in rows]

        except Exception as e:
            logger.error("payment_email_lookup_failed", error=str(e), email=email)
            raise
