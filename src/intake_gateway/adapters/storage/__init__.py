"""Storage adapters for Intake-Gateway.

This module contains storage adapters that implement the StoragePort interface
for tenants, patients, intake documents, idempotency records and the audit trail.
"""

from intake_gateway.adapters.storage.duckdb_adapter import DuckDBAdapter
from intake_gateway.adapters.storage.memory_adapter import InMemoryStorageAdapter

__all__ = ["DuckDBAdapter", "InMemoryStorageAdapter"]
