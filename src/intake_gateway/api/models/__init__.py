"""API response models."""

from intake_gateway.api.models.health import HealthResponse, SourceHealthResponse, StorageHealth

__all__ = ["HealthResponse", "SourceHealthResponse", "StorageHealth"]
