"""File Dead-Letter Queue.

Append-only JSON-lines file holding deliveries that exhausted their retries.
It is independent of the database and keeps accepting entries during a
database outage.

Security Impact:
    - Entries contain raw payloads (PHI); the file is created with 0600
      permissions and must live on encrypted storage
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import List

from intake_gateway.domain.models import DeadLetterEntry
from intake_gateway.domain.ports import DeadLetterPort

logger = logging.getLogger(__name__)


class FileDeadLetterQueue(DeadLetterPort):
    """JSON-lines dead-letter writer.

    Parameters:
        path: Queue file path (parent directories are created on demand)
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def enqueue(self, entry: DeadLetterEntry) -> None:
        """Append one entry.

        Raises:
            OSError: If the file cannot be written
        """
        line = entry.model_dump_json() + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
            with os.fdopen(fd, "a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())

    def list_entries(self) -> List[DeadLetterEntry]:
        """Read all entries, skipping lines that do not parse."""
        if not self.path.exists():
            return []
        entries: List[DeadLetterEntry] = []
        with self._lock, self.path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    entries.append(DeadLetterEntry.model_validate(json.loads(line)))
                except ValueError as e:
                    logger.warning(f"Skipping unreadable dead-letter line {line_number}: {e}")
        return entries
