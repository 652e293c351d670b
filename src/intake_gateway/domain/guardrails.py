"""Domain Guardrails - Bounded Retry for Transient Infrastructure Failures.

This module provides the retry guardrail wrapped around the pipeline's
transient-infrastructure steps (tenant lookup, patient persistence). Retries
are always bounded: when they exhaust, a PersistenceFault is raised and the
caller hands the delivery to the dead-letter queue instead of looping.

Security Impact:
    - Bounded attempts keep a database outage from pinning request threads
    - Only storage failures are retried; authentication and tenant faults
      propagate immediately
    - Uniqueness conflicts are never retried here (identity resolution
      handles them with its own optimistic-concurrency loop)

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - Sleep function is injectable so tests run without real delays
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type, TypeVar

from intake_gateway.domain.ports import PersistenceFault, StorageError, UniqueConflictError

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryPolicy:
    """Configuration for bounded linear-backoff retry.

    Attributes:
        max_attempts: Total attempts including the first call
        base_delay: Delay unit in seconds; attempt n waits base_delay * n
        jitter: Upper bound (seconds) of random delay added to each wait
        sleep: Sleep function (time.sleep in production)
    """
    max_attempts: int = 3
    base_delay: float = 0.5
    jitter: float = 0.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.jitter < 0:
            raise ValueError("Retry delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay (seconds) before retrying after the given failed attempt (1-based)."""
        delay = self.base_delay * attempt
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay

    def wait(self, attempt: int) -> None:
        self.sleep(self.delay_for(attempt))


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    operation: str,
    retry_on: Tuple[Type[Exception], ...] = (StorageError,),
    source: Optional[str] = None
) -> T:
    """Call fn, retrying transient failures with linear backoff.

    Parameters:
        fn: Zero-argument callable to run
        policy: Retry policy
        operation: Operation name for logs and the raised fault
        retry_on: Exception types considered transient
        source: Intake source (for the raised fault)

    Returns:
        T: Return value of fn

    Raises:
        PersistenceFault: If every attempt failed with a transient error
        Exception: Any non-transient error from fn, unchanged
    """
    last_error: Optional[Exception] = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn()
        except UniqueConflictError:
            raise
        except retry_on as e:
            last_error = e
            logger.warning(
                f"{operation} failed (attempt {attempt}/{policy.max_attempts}): "
                f"{type(e).__name__}: {e}"
            )
            if attempt < policy.max_attempts:
                policy.wait(attempt)

    raise PersistenceFault(
        f"{operation} failed after {policy.max_attempts} attempts: {last_error}",
        operation=operation,
        attempts=policy.max_attempts,
        source=source,
        details={"last_error": type(last_error).__name__}
    ) from last_error
