"""Dead-Letter Handling.

When a transient-infrastructure step exhausts its retries, the delivery is
handed to a durable dead-letter queue for out-of-band replay and the caller
answers with a definitive failure. Nothing here retries again.
"""

import logging
from typing import Optional

from intake_gateway.domain.models import DeadLetterEntry
from intake_gateway.domain.ports import DeadLetterPort, StorageError

logger = logging.getLogger(__name__)


class DeadLetterHandler:
    """Capture unprocessed deliveries.

    Parameters:
        queue: Dead-letter writer, or None when no queue is configured
    """

    def __init__(self, queue: Optional[DeadLetterPort]):
        self._queue = queue

    @property
    def configured(self) -> bool:
        return self._queue is not None

    def capture(
        self,
        raw_body: bytes,
        source: str,
        reason: str,
        submission_id: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> bool:
        """Enqueue a delivery for replay.

        Parameters:
            raw_body: Exact request bytes
            source: Intake source name
            reason: Failure reason (no PHI)
            submission_id: Submission id, if normalization got that far
            request_id: Correlation id

        Returns:
            bool: True if the delivery was queued
        """
        if self._queue is None:
            logger.critical(f"Dead-letter queue not configured; {source} delivery {request_id} is lost: {reason}")
            return False

        entry = DeadLetterEntry(
            payload=raw_body.decode("utf-8", errors="replace"),
            source=source,
            submission_id=submission_id,
            reason=reason,
            request_id=request_id,
        )
        try:
            self._queue.enqueue(entry)
        except (OSError, StorageError) as e:
            logger.critical(f"Failed to dead-letter {source} delivery {request_id}: {e}")
            return False

        logger.error(f"Dead-lettered {source} delivery {request_id} (entry {entry.id}): {reason}")
        return True
