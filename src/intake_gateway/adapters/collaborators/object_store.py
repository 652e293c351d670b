"""Local Object Store.

Filesystem-backed ObjectStorePort for single-node deployments and tests.
Keys are relative paths below the base directory; the returned URL is a
file:// URI.
"""

import logging
from pathlib import Path

from intake_gateway.domain.ports import ObjectStorePort, SideEffectFault

logger = logging.getLogger(__name__)


class LocalObjectStore(ObjectStorePort):
    """Store artifacts under a base directory.

    Parameters:
        base_dir: Root directory for stored objects (created on demand)

    Security Impact:
        - Keys that resolve outside base_dir are rejected
    """

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir).resolve()

    def put(self, data: bytes, key: str) -> str:
        target = (self.base_dir / key.lstrip("/")).resolve()
        if self.base_dir not in target.parents:
            raise SideEffectFault(f"Object key escapes the store root: {key}", step="artifact")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise SideEffectFault(f"Failed to write artifact: {e}", step="artifact") from e

        logger.info(f"Stored artifact {key} ({len(data)} bytes)")
        return target.as_uri()
