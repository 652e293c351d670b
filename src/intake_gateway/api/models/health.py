"""Health check models for the intake API."""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class StorageHealth(BaseModel):
    """Storage health status model.

    Attributes:
        status: Connection status
        type: Storage type (duckdb or memory)
        response_time_ms: Storage response time in milliseconds (optional)
    """
    status: Literal["connected", "disconnected"]
    type: str
    response_time_ms: Optional[float] = Field(None, description="Storage response time in milliseconds")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: Literal["healthy", "unhealthy"]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str
    storage: StorageHealth


class SourceHealthResponse(BaseModel):
    """Per-source binding status. Never carries secrets."""
    source: str
    configured: bool
    clinicIsolation: Optional[Literal["static", "dynamic"]] = None
    authKinds: List[str] = Field(default_factory=list)
    tenantSubdomain: Optional[str] = None
    signatureRequired: bool = False
