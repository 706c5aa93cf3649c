"""
services/retry.py: bounded retry with exponential backoff for transaction
attempts.

Only TransactionConflict (transient contention) is retried. AppError and
every other exception propagate on first occurrence, so a business-rule
failure such as SPLITS_NOT_APPROVED is never attempted twice.

    policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    policy.run(attempt_fn, order_id)

    # delays between attempts: base × 2**1, base × 2**2, ...

Exhausting the budget raises AppError(PROCESSING_ERROR, 503), chained from
the last conflict.
"""

from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from gatherpay.app.errors import AppError, ErrorCode, TransactionConflict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative.")

    def delay_for(self, attempt: int) -> float:
        """Backoff after the `attempt`-th failed attempt (1-based)."""
        return self.base_delay * (2 ** attempt)

    def run(self, fn: Callable, *args, **kwargs):
        last_conflict: TransactionConflict | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn(*args, **kwargs)
            except TransactionConflict as conflict:
                last_conflict = conflict
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    "Transaction conflict in %s (attempt %d/%d), retrying in %.2fs: %s",
                    getattr(fn, "__name__", repr(fn)),
                    attempt,
                    self.max_attempts,
                    delay,
                    conflict,
                )
                self.sleep(delay)

        logger.error(
            "Giving up on %s after %d attempts: %s",
            getattr(fn, "__name__", repr(fn)),
            self.max_attempts,
            last_conflict,
        )
        raise AppError(
            ErrorCode.PROCESSING_ERROR,
            f"The transaction could not be completed after {self.max_attempts} attempts "
            f"because of concurrent updates. Please try again.",
            503,
        ) from last_conflict


def retry_on_conflict(policy: RetryPolicy) -> Callable:
    """Decorator form of RetryPolicy.run()."""
    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            return policy.run(fn, *args, **kwargs)
        return wrapper
    return decorator
