"""
Authentication models.

Provides Pydantic schemas for:
- Supabase access token payloads
- The authenticated user attached to a request
- Error responses
"""

from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from api.src.models.plans import Role


# ============================================================================
# JWT Models
# ============================================================================


class TokenPayload(BaseModel):
    """
    Claims of a Supabase access token.

    Only the claims this service reads are declared; the rest are ignored.
    """
    sub: UUID = Field(..., description="Auth user id")
    email: Optional[str] = Field(default=None)
    aud: Optional[str] = Field(default=None)
    exp: int = Field(..., description="Expiration timestamp (unix)")
    role: Optional[str] = Field(default=None, description="Postgres role, usually 'authenticated'")
    app_metadata: Dict[str, Any] = Field(default_factory=dict)
    user_metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}


class CurrentUser(BaseModel):
    """The caller of an authenticated endpoint."""
    id: UUID
    email: Optional[str] = None
    role: Role = Role.NOSUBS
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def can_act_for(self, user_id: UUID) -> bool:
        """Users act on their own account; admins on any."""
        return self.is_admin or self.id == user_id


# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: str = Field(..., description="Error message")
    error_code: Optional[str] = Field(default=None, description="Application error code")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"detail": "Invalid plan selected", "error_code": "BILLING_001"}
            ]
        }
    }
