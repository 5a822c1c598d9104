"""Common Pydantic models shared across services."""

from enum import Enum
from typing import Dict

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    """Health status enum."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


class HealthResponse(BaseModel):
    """Liveness probe body."""

    status: HealthStatus = HealthStatus.HEALTHY
    service: str
    version: str
    environment: str


class ReadinessResponse(BaseModel):
    """Readiness probe body with per-dependency checks."""

    status: str = Field(..., description="ready or not_ready")
    service: str
    version: str
    checks: Dict[str, HealthStatus] = Field(default_factory=dict)

    @property
    def is_ready(self) -> bool:
        return all(check == HealthStatus.HEALTHY for check in self.checks.values())
