"""Shared Pydantic models."""

from .common import (
    HealthStatus,
    HealthResponse,
    ReadinessResponse,
)

__all__ = [
    "HealthStatus",
    "HealthResponse",
    "ReadinessResponse",
]
