from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from report_jobs.utils.logging import get_logger

T = TypeVar("T")

log = get_logger("report_jobs.retry")


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior around store and table operations."""

    max_attempts: int = 5
    base_delay_s: float = 0.25
    max_delay_s: float = 4.0
    jitter_s: float = 0.05


def backoff_delay(policy: RetryPolicy, attempt_index: int) -> float:
    """Exponential delay for the given zero-based attempt, capped at max_delay_s."""
    delay = min(policy.base_delay_s * (2**attempt_index), policy.max_delay_s)
    if policy.jitter_s > 0:
        delay += random.uniform(0, policy.jitter_s)
    return delay


def with_backoff(
    operation: Callable[[], T],
    max_attempts: Optional[int] = None,
    label: str = "op",
    policy: Optional[RetryPolicy] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Invoke operation, retrying retryable failures with exponential backoff.

    The error from the final attempt is re-raised unchanged. Errors that are not
    instances of retry_on propagate immediately.
    """
    policy = policy or RetryPolicy()
    attempts = max(1, int(max_attempts if max_attempts is not None else policy.max_attempts))

    for attempt in range(attempts):
        try:
            return operation()
        except retry_on as e:
            if attempt >= attempts - 1:
                raise
            delay = backoff_delay(policy, attempt)
            log.warning(
                "Retrying %s (exception=%s, attempt=%s/%s, sleep=%.2fs)",
                label,
                type(e).__name__,
                attempt + 1,
                attempts,
                delay,
            )
            sleep(delay)

    # Should never hit
    raise RuntimeError(f"{label} failed unexpectedly")
