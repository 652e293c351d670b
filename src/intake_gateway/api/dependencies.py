"""Dependency injection for the intake API.

This module provides dependency injection functions for FastAPI, following
Hexagonal Architecture principles by building on the composition root.
"""

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from intake_gateway.domain.ports import StoragePort
from intake_gateway.domain.services import IntakePipeline
from intake_gateway.main import build_pipeline, create_storage_adapter

logger = logging.getLogger(__name__)


@lru_cache()
def get_storage_adapter() -> StoragePort:
    """Get storage adapter instance (cached).

    The schema is initialized on first use. The result is cached to avoid
    recreating the adapter on every request.

    Returns:
        StoragePort: Configured storage adapter instance

    Raises:
        ValueError: If database type is unsupported
    """
    storage = create_storage_adapter()
    result = storage.initialize_schema()
    if result.is_failure():
        logger.error(f"Storage schema initialization failed: {result.error}")
    return storage


@lru_cache()
def get_pipeline() -> IntakePipeline:
    """Get the intake pipeline (cached), wired to the cached storage adapter."""
    return build_pipeline(get_storage_adapter())


# Type aliases for dependency injection
StorageDep = Annotated[StoragePort, Depends(get_storage_adapter)]
PipelineDep = Annotated[IntakePipeline, Depends(get_pipeline)]
