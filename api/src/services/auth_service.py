"""
Authentication service for Supabase access tokens.

Provides:
- JWT validation (python-jose) of tokens issued by Supabase Auth
- Resolution of the caller's subscription role
"""

from typing import Any, Mapping, Optional

import structlog
from jose import JWTError, jwt
from pydantic import ValidationError

from api.src.config import Settings, get_settings
from api.src.models.auth import CurrentUser, TokenPayload
from api.src.models.plans import normalize_role
from api.src.repositories.user_role_repo import UserRoleRepository

logger = structlog.get_logger(__name__)


def _metadata_role(metadata: Mapping[str, Any]) -> Optional[str]:
    value = metadata.get("role")
    return value if isinstance(value, str) else None


class AuthService:
    """Service for authenticating API callers."""

    def __init__(self, user_roles: UserRoleRepository, settings: Optional[Settings] = None):
        """
        Initialize auth service.

        Args:
            user_roles: Repository used to read the caller's role
            settings: Application settings (JWT secret and audience)
        """
        self.user_roles = user_roles
        self.settings = settings or get_settings()

    def decode_token(self, token: str) -> Optional[TokenPayload]:
        """
        Decode and validate a Supabase access token.

        Args:
            token: JWT token string

        Returns:
            Token payload or None if invalid or expired
        """
        try:
            payload = jwt.decode(
                token,
                self.settings.supabase_jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
                audience=self.settings.supabase_jwt_audience
            )

            token_payload = TokenPayload(**payload)

            logger.debug("token_decoded", user_id=str(token_payload.sub))
            return token_payload

        except JWTError as e:
            logger.warning("token_decode_failed", error=str(e))
            return None
        except ValidationError as e:
            logger.warning("token_claims_invalid", error=str(e))
            return None

    async def get_current_user(self, token: str) -> Optional[CurrentUser]:
        """
        Get the caller behind a token.

        The role comes from ``user_roles``; when the user has no row (or the
        read fails) it falls back to the token's app metadata, then its user
        metadata, then ``nosubs``.

        Args:
            token: JWT token string

        Returns:
            Current user or None if the token is invalid
        """
        payload = self.decode_token(token)
        if not payload:
            return None

        role: Optional[str] = None
        try:
            record = await self.user_roles.get_role(payload.sub)
            role = record.role if record else None
        except Exception as e:
            logger.error("current_user_role_read_failed", user_id=str(payload.sub), error=str(e))

        if role is None:
            role = _metadata_role(payload.app_metadata) or _metadata_role(payload.user_metadata)

        return CurrentUser(
            id=payload.sub,
            email=payload.email,
            role=normalize_role(role),
            metadata=payload.user_metadata,
        )
