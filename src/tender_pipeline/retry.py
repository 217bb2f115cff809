"""Bounded retry with backoff.

One retry loop for every external call. The caller supplies how to recognise
a rate-limit failure and how to read a server-suggested wait from an error;
the policy decides how long to sleep and when to give up.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .errors import EnrichmentFatal, RetryExhausted

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    rate_limit_base_delay: float = 20.0
    generic_base_delay: float = 3.0
    # added on top of a server-suggested wait
    retry_after_margin: float = 2.0


def compute_backoff(
    policy: RetryPolicy,
    attempt: int,
    rate_limited: bool,
    suggested_wait: Optional[float] = None,
) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
    if suggested_wait is not None:
        return max(0.0, suggested_wait) + policy.retry_after_margin
    base = policy.rate_limit_base_delay if rate_limited else policy.generic_base_delay
    return base * attempt


def call_with_retry(
    fn: Callable[[], Any],
    *,
    policy: RetryPolicy = RetryPolicy(),
    is_rate_limited: Callable[[Exception], bool] = lambda e: False,
    suggested_wait: Callable[[Exception], Optional[float]] = lambda e: None,
    before_attempt: Optional[Callable[[int], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "call",
) -> Any:
    """
    Call ``fn`` until it succeeds or ``policy.max_attempts`` is reached.

    Args:
        fn: Zero-argument callable performing one attempt
        policy: Attempt limit and backoff parameters
        is_rate_limited: Classifies a failure as rate limiting
        suggested_wait: Extracts a server-suggested wait (seconds) from a failure
        before_attempt: Hook run before each attempt with the attempt number;
            raising EnrichmentFatal from it stops immediately
        sleep: Sleep function (injected in tests)
        label: Name used in log messages

    Returns:
        Whatever ``fn`` returns on the first successful attempt.

    Raises:
        EnrichmentFatal: Raised by ``fn`` or ``before_attempt``; never retried
        RetryExhausted: When every attempt failed
    """
    for attempt in range(1, policy.max_attempts + 1):
        if before_attempt is not None:
            before_attempt(attempt)
        try:
            return fn()
        except EnrichmentFatal:
            raise
        except Exception as e:
            if attempt >= policy.max_attempts:
                logger.error("%s failed after %d attempts: %s", label, attempt, e)
                raise RetryExhausted(attempt, e) from e

            rate_limited = is_rate_limited(e)
            wait = compute_backoff(policy, attempt, rate_limited, suggested_wait(e))
            if rate_limited:
                logger.warning(
                    "Rate limit on %s - waiting %.0fs before retrying (%d/%d)",
                    label, wait, attempt, policy.max_attempts,
                )
            else:
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.0fs: %s",
                    label, attempt, policy.max_attempts, wait, e,
                )
            sleep(wait)

    # max_attempts < 1
    raise ValueError("RetryPolicy.max_attempts must be at least 1")
