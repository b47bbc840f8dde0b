# docgraph_sdk/core/retry.py
# SPDX-License-Identifier: Apache-2.0
"""
Caller-side retry with exponential backoff.

The request executor and cursors never retry on their own. Callers that
want retries wrap the call:

    policy = RetryPolicy(max_attempts=5, base_ms=200, max_ms=5_000)
    doc = await retry_async(lambda: db.get_document("users", "42"), policy=policy)

    # A failed batch fetch leaves the cursor untouched, so next() itself
    # can be retried:
    item = await retry_async(cursor.next, policy=policy)

Only transient transport failures are retried: connection-level errors
(no HTTP status), 5xx responses, 429, and anything carrying a server
retry hint. Decode failures, cursor misuse (closed/exhausted) and expired
cursors are never retried; retrying them cannot succeed.

Jitter can be turned off for deterministic tests.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, TypeVar, Union

from docgraph_sdk.query.query_base import (
    BadRequest,
    CursorClosed,
    CursorExhausted,
    CursorExpired,
    DecodeError,
    DeadlineExceeded,
    DocGraphError,
    TransportError,
)

LOG = logging.getLogger(__name__)

T = TypeVar("T")

_NEVER_RETRY = (DecodeError, CursorClosed, CursorExhausted, CursorExpired, BadRequest)
_RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryStats:
    """
    Statistics about a retried call.

    Attributes:
        attempts: Number of attempts made (including the successful one)
        total_delay: Total time spent sleeping between attempts (seconds)
        last_exception: Last failure seen before success, if any
    """
    attempts: int
    total_delay: float
    last_exception: Optional[BaseException] = None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration with exponential backoff.

    Attributes:
        max_attempts: Total tries including the first attempt.
        base_ms:      Initial backoff in milliseconds.
        max_ms:       Maximum backoff cap in milliseconds.
        multiplier:   Exponential growth factor per attempt.
        use_jitter:   Randomize sleep in [0, backoff].
    """

    max_attempts: int = 4
    base_ms: int = 150
    max_ms: int = 10_000
    multiplier: float = 2.0
    use_jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_ms <= 0 or self.max_ms <= 0:
            raise ValueError("Backoff times must be positive")
        if self.multiplier < 1.0:
            raise ValueError("Multiplier must be >= 1.0")
        if self.base_ms > self.max_ms:
            raise ValueError("base_ms cannot exceed max_ms")

    def backoff_ms(self, attempt_index: int) -> int:
        """Compute exponential backoff for a given retry index."""
        raw = int(self.base_ms * (self.multiplier ** attempt_index))
        return min(raw, self.max_ms)


def is_transient(exc: BaseException) -> bool:
    """Decide whether `exc` is worth another attempt."""
    if isinstance(exc, _NEVER_RETRY):
        return False
    if isinstance(exc, DeadlineExceeded):
        return False
    if isinstance(exc, TransportError):
        if exc.retry_after_ms is not None:
            return True
        if exc.status is None:
            return True
        return exc.status in _RETRYABLE_STATUSES
    return False


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy = RetryPolicy(),
    is_retryable: Callable[[BaseException], bool] = is_transient,
    on_backoff: Optional[Callable[[int, float, BaseException], None]] = None,
    return_stats: bool = False,
) -> Union[T, Tuple[T, RetryStats]]:
    """
    Execute an async operation with retries on transient failures.

    Args:
        fn:           Zero-arg coroutine factory invoked for each attempt.
        policy:       RetryPolicy controlling backoff.
        is_retryable: Predicate deciding whether an exception is retried.
        on_backoff:   Optional callback (attempt_no, sleep_seconds, exc).
        return_stats: If True, return (result, RetryStats).

    Raises:
        The last exception if all attempts fail or a non-retryable error occurs.
    """
    total_delay = 0.0
    last_exception: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await fn()
        except DocGraphError as exc:
            last_exception = exc
            if not is_retryable(exc) or attempt >= policy.max_attempts:
                raise

            backoff = policy.backoff_ms(attempt_index=attempt - 1) / 1000.0
            retry_after = exc.retry_after_ms / 1000.0 if exc.retry_after_ms else 0.0
            sleep_for = random.random() * backoff if policy.use_jitter else backoff
            sleep_for = max(sleep_for, retry_after)
            total_delay += sleep_for

            LOG.debug("attempt %d failed (%s); retrying in %.3fs", attempt, exc.code, sleep_for)
            if on_backoff:
                try:
                    on_backoff(attempt, sleep_for, exc)
                except Exception:
                    # hooks never break the retry loop
                    pass
            await asyncio.sleep(sleep_for)
            continue

        if return_stats:
            return result, RetryStats(
                attempts=attempt,
                total_delay=total_delay,
                last_exception=last_exception,
            )
        return result

    raise AssertionError("unreachable")  # pragma: no cover


__all__ = [
    "RetryPolicy",
    "RetryStats",
    "is_transient",
    "retry_async",
]
