"""Retry with exponential backoff and jitter.

Ledger transitions are compare-and-swap: when another worker changes a
transaction between read and write, the transition raises
``StaleStateTransition`` and the caller re-reads and tries again. This module
holds the single retry loop used for that.

Usage:
    result = retry_sync(
        lambda: ledger.propose(candidate),
        config=STALE_STATE_RETRY,
    )

    # With a retry callback
    def on_retry(error: Exception, attempt: int) -> None:
        metrics.stale_retries.inc()

    retry_sync(func, config=RetryConfig(max_retries=5), on_retry=on_retry)
"""

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import TypeVar

from hotspotrecon.exceptions import DatabaseError, StaleStateTransition
from hotspotrecon.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Base delay in seconds before first retry (default: 0.1)
        max_delay: Maximum delay in seconds between retries (default: 5.0)
        backoff_factor: Exponential backoff multiplier (default: 2.0)
        jitter: Whether to add random jitter to delays (default: True)
        jitter_range: Range for jitter as fraction of delay (default: 0.1 = ±10%)
        retryable_exceptions: Tuple of exception types to retry

    Examples:
        # Retry only lost compare-and-swap races
        RetryConfig(max_retries=3, retryable_exceptions=(StaleStateTransition,))
    """

    max_retries: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0
    backoff_factor: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1
    retryable_exceptions: tuple[type[Exception], ...] = field(default_factory=lambda: (Exception,))

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if not 0 <= self.jitter_range <= 1:
            raise ValueError("jitter_range must be between 0 and 1")

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before retry ``attempt`` (0-indexed)."""
        delay = min(self.base_delay * (self.backoff_factor**attempt), self.max_delay)

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0, delay + random.uniform(-jitter_amount, jitter_amount))

        return delay

    def with_retries(self, max_retries: int) -> "RetryConfig":
        """Copy of this config with a different retry budget."""
        return replace(self, max_retries=max_retries)


def retry_sync(
    func: Callable[[], T],
    config: RetryConfig | None = None,
    on_retry: Callable[[Exception, int], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds or the retry budget is exhausted.

    Args:
        func: Function to retry (takes no arguments)
        config: Retry configuration (uses defaults if None)
        on_retry: Optional callback called before each retry with the error
            and the 1-indexed retry number
        sleep: Sleep function, replaceable in tests

    Returns:
        The return value of func() on success

    Raises:
        The last exception if all retries are exhausted, or immediately for
        exceptions not listed in ``config.retryable_exceptions``
    """
    config = config or RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return func()
        except Exception as e:
            if not isinstance(e, config.retryable_exceptions):
                logger.debug(
                    "retry_skipped_non_retryable_exception",
                    exception_type=type(e).__name__,
                    error=str(e),
                )
                raise

            if attempt >= config.max_retries:
                logger.warning(
                    "retry_exhausted",
                    attempts=attempt + 1,
                    exception=type(e).__name__,
                    error=str(e),
                )
                raise

            delay = config.calculate_delay(attempt)
            logger.info(
                "retry_attempt",
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 3),
                exception=type(e).__name__,
            )
            if on_retry is not None:
                on_retry(e, attempt + 1)
            sleep(delay)

    raise RuntimeError("retry loop exited without result")  # pragma: no cover


# Lost compare-and-swap races: re-read and try again quickly.
STALE_STATE_RETRY = RetryConfig(
    max_retries=3,
    base_delay=0.05,
    max_delay=0.5,
    retryable_exceptions=(StaleStateTransition,),
)

DATABASE_RETRY = RetryConfig(
    max_retries=3,
    base_delay=0.5,
    max_delay=5.0,
    retryable_exceptions=(DatabaseError,),
)
