"""Health check endpoint for the intake API."""

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter

from intake_gateway import __version__
from intake_gateway.adapters.storage import DuckDBAdapter
from intake_gateway.api.dependencies import StorageDep
from intake_gateway.api.models import HealthResponse, StorageHealth
from intake_gateway.domain.ports import StoragePort

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


def check_storage_health(storage: StoragePort) -> StorageHealth:
    """Check storage connectivity.

    Security Impact:
        - Only checks connectivity, no sensitive data exposed
    """
    storage_type = "duckdb" if isinstance(storage, DuckDBAdapter) else "memory"
    start_time = time.time()
    if storage.ping():
        response_time = (time.time() - start_time) * 1000
        return StorageHealth(status="connected", type=storage_type, response_time_ms=round(response_time, 2))

    logger.warning("Storage health check failed")
    return StorageHealth(status="disconnected", type=storage_type)


@router.get("/health", response_model=HealthResponse)
def health_check(storage: StorageDep) -> HealthResponse:
    """Health check endpoint used by monitoring tools and load balancers."""
    storage_health = check_storage_health(storage)
    return HealthResponse(
        status="healthy" if storage_health.status == "connected" else "unhealthy",
        timestamp=datetime.now(timezone.utc),
        version=__version__,
        storage=storage_health
    )
