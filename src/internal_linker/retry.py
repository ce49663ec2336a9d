"""
Bounded exponential backoff for calls that may fail transiently.

Only retryable failures are repeated: TransientError, ConnectionError,
TimeoutError, and exceptions carrying a retryable ``status``/``code``
(rate limiting, gateway errors, serialization conflicts). Everything else
propagates on the first attempt.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from internal_linker.errors import TransientError

log = logging.getLogger("internal_linker.retry")

T = TypeVar("T")

RETRYABLE_CODES: frozenset[int | str] = frozenset({
    408, 409, 425, 429, 500, 502, 503, 504,
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "ECONNRESET",
    "ETIMEDOUT",
})


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Sleep before retry number ``attempt + 1`` (attempt counts from 0)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


def _error_code(error: BaseException) -> Any:
    for attr in ("code", "status", "status_code"):
        value = getattr(error, attr, None)
        if value is not None:
            return value
    return None


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, (TransientError, ConnectionError, TimeoutError)):
        return True
    code = _error_code(error)
    if code is None:
        return False
    if code in RETRYABLE_CODES:
        return True
    # HTTP statuses may arrive as strings ("503"); SQLSTATE codes stay strings
    return isinstance(code, str) and code.isdigit() and int(code) in RETRYABLE_CODES


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """
    Call ``func`` until it succeeds, a non-retryable error occurs or attempts run out.

    Args:
        func: Callable to execute
        policy: Attempt count and backoff (default RetryPolicy())
        sleep: Sleep function, replaceable in tests

    Returns:
        Result of the successful call

    Raises:
        The last exception raised by ``func``
    """
    policy = policy or RetryPolicy()
    for attempt in range(policy.max_attempts):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e) or attempt == policy.max_attempts - 1:
                raise
            delay = policy.delay(attempt)
            log.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                getattr(func, "__name__", "call"),
                attempt + 1,
                policy.max_attempts,
                e,
                delay,
            )
            sleep(delay)
    raise RuntimeError("unreachable: retry loop exited without result")


__all__ = [
    "RETRYABLE_CODES",
    "RetryPolicy",
    "call_with_retry",
    "is_retryable",
]
