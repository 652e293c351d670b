"""Idempotency Guard.

Suppresses duplicate side effects when a vendor redelivers the same webhook.
The key is derived from the source name, the resolved tenant and the exact
request bytes; a hit replays the cached response and nothing downstream runs
again. Unmatched deliveries have no tenant and use the tenant-less key.

Security Impact:
    - Keys are SHA-256 digests; raw bodies (PHI) are never stored here
    - A lookup failure degrades to "not seen" so an idempotency store outage
      cannot block intake

Architecture:
    - Domain service over IdempotencyStorePort
    - The check is advisory: two concurrent identical deliveries can both
      miss before either records its response
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from intake_gateway.domain.models import IdempotencyRecord
from intake_gateway.domain.ports import IdempotencyStorePort, StorageError

logger = logging.getLogger(__name__)

# Outcomes worth replaying; failures must stay retryable by the vendor
REPLAYABLE_STATUSES = (200, 202)


def idempotency_key(source: str, raw_body: bytes, tenant_id: Optional[int] = None) -> str:
    """Key = '<source>_[<tenant>_]' + sha256(raw body) hex."""
    digest = hashlib.sha256(raw_body).hexdigest()
    if tenant_id is None:
        return f"{source}_{digest}"
    return f"{source}_{tenant_id}_{digest}"


@dataclass(frozen=True)
class IdempotencyHit:
    key: str
    status: int
    body: Dict[str, Any]

    def duplicate_response(self, request_id: str) -> Dict[str, Any]:
        return {
            "received": True,
            "status": "duplicate",
            "requestId": request_id,
            "originalResponse": self.body,
        }


class IdempotencyGuard:
    """Check and record processed deliveries.

    Parameters:
        store: Idempotency record store
    """

    def __init__(self, store: IdempotencyStorePort):
        self._store = store

    def check(self, source: str, raw_body: bytes, tenant_id: Optional[int] = None) -> Optional[IdempotencyHit]:
        """Return the cached outcome if this exact delivery was processed.

        Parameters:
            source: Intake source name
            raw_body: Exact request bytes
            tenant_id: Resolved tenant; None for unmatched deliveries

        Returns:
            IdempotencyHit, or None on a miss or lookup failure
        """
        key = idempotency_key(source, raw_body, tenant_id)
        try:
            record = self._store.get_idempotency_record(key)
        except StorageError as e:
            logger.warning(f"Idempotency lookup failed for {source}, processing anyway: {e}")
            return None

        if record is None:
            return None

        logger.info(f"Duplicate {source} delivery detected (key {key[:24]}...)")
        return IdempotencyHit(key=key, status=record.response_status, body=record.response_body)

    def remember(
        self,
        source: str,
        raw_body: bytes,
        status: int,
        body: Dict[str, Any],
        tenant_id: Optional[int] = None
    ) -> bool:
        """Persist the final response for this delivery.

        Only replayable outcomes are stored. Failures are logged, not raised:
        the intake itself already committed.

        Returns:
            bool: True if a record was written
        """
        if status not in REPLAYABLE_STATUSES:
            return False
        key = idempotency_key(source, raw_body, tenant_id)
        try:
            self._store.save_idempotency_record(
                IdempotencyRecord(key=key, source=source, response_status=status, response_body=body)
            )
        except StorageError as e:
            logger.warning(f"Failed to store idempotency record for {source}: {e}")
            return False
        return True
