"""Request and Tenant Context Management.

This module provides context variables carrying the request correlation id and
the resolved tenant through the pipeline without threading them through every
call signature.

Security Impact:
    - Tenant-scoped storage operations call require_tenant_id(); outside an
      active tenant_scope() they fail instead of reading unscoped data
    - The tenant scope is torn down on every exit path (token reset in finally)
    - Nested scopes for a different tenant are refused

Architecture:
    - Uses contextvars for thread-safe context passing (FastAPI runs sync
      handlers in a threadpool, each request gets its own context)
    - Storage adapters read the tenant without a direct dependency on the
      HTTP layer
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from intake_gateway.domain.ports import TenantFault

_tenant_id: ContextVar[Optional[int]] = ContextVar('tenant_id', default=None)
_request_id: ContextVar[Optional[str]] = ContextVar('request_id', default=None)


def get_tenant_id() -> Optional[int]:
    """Get the tenant id of the current execution context, if any."""
    return _tenant_id.get()


def require_tenant_id() -> int:
    """Get the current tenant id or fail.

    Returns:
        int: Active tenant id

    Raises:
        TenantFault: If no tenant scope is active
    """
    tenant_id = _tenant_id.get()
    if tenant_id is None:
        raise TenantFault(
            "Tenant-scoped operation attempted outside a tenant context",
            code="NO_TENANT_CONTEXT"
        )
    return tenant_id


@contextmanager
def tenant_scope(tenant_id: int) -> Iterator[int]:
    """Context manager binding all tenant-scoped operations to one tenant.

    Parameters:
        tenant_id: Resolved tenant id

    Yields:
        int: The active tenant id

    Raises:
        TenantFault: If a different tenant scope is already active

    Example:
        ```python
        with tenant_scope(tenant.id):
            storage.list_recent_patients(500)
        ```
    """
    current = _tenant_id.get()
    if current is not None and current != tenant_id:
        raise TenantFault(
            "Refusing to nest tenant scopes for different tenants",
            expected_tenant_id=current,
            resolved_tenant_id=tenant_id,
            code="TENANT_SCOPE_CONFLICT"
        )
    token = _tenant_id.set(tenant_id)
    try:
        yield tenant_id
    finally:
        _tenant_id.reset(token)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def new_request_id() -> str:
    return uuid.uuid4().hex[:16]


@contextmanager
def request_scope(request_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id to the current execution context.

    Parameters:
        request_id: Incoming correlation id, or None to generate one

    Yields:
        str: The active request id
    """
    token = _request_id.set(request_id or new_request_id())
    try:
        yield _request_id.get()
    finally:
        _request_id.reset(token)
