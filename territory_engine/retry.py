"""One-retry exponential backoff for external calls."""

import logging
import time
from typing import Callable, Optional, TypeVar

from .errors import SourceQueryError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float = 1.0, multiplier: float = 2.0,
                  cap: float = 10.0) -> float:
    """Delay before retry number `attempt` (1-based): base * multiplier**(attempt-1), capped."""
    if attempt < 1:
        return 0.0
    return min(cap, base * multiplier ** (attempt - 1))


def call_with_retry(
    fn: Callable[[], T],
    max_retries: int = 1,
    base: float = 1.0,
    multiplier: float = 2.0,
    cap: float = 10.0,
    deadline: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.time,
) -> T:
    """Run fn, retrying SourceQueryError up to max_retries times.

    Only the final outcome is visible to the caller, so health tracking sees
    one success or one failure per attempt-with-retries. A retry that would
    start after `deadline` is not attempted.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except SourceQueryError as e:
            attempt += 1
            if not e.retryable or attempt > max_retries:
                raise
            delay = backoff_delay(attempt, base, multiplier, cap)
            if deadline is not None and clock() + delay >= deadline:
                raise
            logger.debug(f"{e.source_id}: retry {attempt}/{max_retries} in {delay:.1f}s ({e})")
            if delay > 0:
                sleep(delay)
