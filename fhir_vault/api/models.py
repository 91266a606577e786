"""Response models for the operational endpoints."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from fhir_vault.domain.utils import utcnow


class DatabaseHealth(BaseModel):
    """Ledger backend health.

    Attributes:
        status: Connection status
        type: Ledger backend (memory, duckdb or postgresql)
        response_time_ms: Ping round-trip in milliseconds (optional)
    """
    status: Literal["connected", "disconnected"]
    type: str
    response_time_ms: Optional[float] = Field(None, description="Ping response time in milliseconds")


class HealthResponse(BaseModel):
    status: Literal["healthy", "unhealthy"]
    timestamp: datetime = Field(default_factory=utcnow, description="Current UTC timestamp")
    version: str = Field(..., description="Application version")
    database: DatabaseHealth
    reason: Optional[str] = Field(None, description="Why the service is unhealthy")
