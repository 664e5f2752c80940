"""Bounded retry with exponential backoff for upstream calls.

Every call to the device directory and to the chat platform goes through
`with_retry`. The wrapper knows nothing about the operation it runs:

- at most `max_attempts` attempts (5 by default)
- backoff starts at 1s, doubles after each failure, capped at 30s
- rate-limited failures (status 429, or a "429"/"rate limit" message on
  errors without a status) are always
  retried within the attempt cap and logged separately
- any other failure is retried, except on the last attempt where the
  original exception is raised unchanged
- the backoff wait is cancellable: task cancellation propagates at once,
  and a set `cancel_event` aborts the loop with RetryCancelledError
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_BACKOFF_SECONDS = 1.0
DEFAULT_MAX_BACKOFF_SECONDS = 30.0

RATE_LIMIT_MARKERS = ("429", "rate limit")


class MaxRetriesExceededError(Exception):
    """Raised when every attempt failed on the rate-limit path."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__("max retries exceeded")
        self.attempts = attempts
        self.last_error = last_error


class RetryCancelledError(Exception):
    """Raised when the cancel event fires during a backoff wait."""

    pass


def is_rate_limited(error: BaseException) -> bool:
    """Check whether an error signals upstream rate limiting.

    A structured status code is authoritative. The message is only scanned
    for errors without one, since messages carry device ids and bodies.
    """
    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        return status_code == 429
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt cap and backoff bounds for `with_retry`."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_backoff_seconds: float = DEFAULT_INITIAL_BACKOFF_SECONDS
    max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ValueError("backoff durations cannot be negative")


@dataclass
class RetryState:
    """Bookkeeping for one wrapped call."""

    backoff_seconds: float
    attempt: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at


async def _wait(
    seconds: float,
    cancel_event: asyncio.Event | None,
    sleep: Callable[[float], Awaitable[None]],
) -> None:
    if cancel_event is None:
        await sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except TimeoutError:
        return
    raise RetryCancelledError("retry cancelled during backoff")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    cancel_event: asyncio.Event | None = None,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `operation` until it succeeds or the attempt cap is reached.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Attempt cap and backoff bounds. Defaults to 5 attempts, 1s-30s.
        cancel_event: When set during a backoff wait, retrying stops.
        description: Name used in log records.
        sleep: Backoff wait used when no cancel_event is given.

    Returns:
        The result of the first successful attempt.

    Raises:
        Exception: The last error, unchanged, if the final attempt fails
            with a non-rate-limit error.
        MaxRetriesExceededError: If the attempts ran out on the rate-limit path.
        RetryCancelledError: If cancel_event fired during a backoff wait.
    """
    policy = policy or RetryPolicy()
    state = RetryState(backoff_seconds=policy.initial_backoff_seconds)
    last_error: Exception | None = None

    while state.attempt < policy.max_attempts:
        state.attempt += 1
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if is_rate_limited(e):
                logger.warning(
                    "Rate limited, waiting before retry",
                    extra={
                        "operation": description,
                        "attempt": state.attempt,
                        "backoff_seconds": state.backoff_seconds,
                    },
                )
            elif state.attempt == policy.max_attempts:
                raise
            else:
                logger.warning(
                    "Request failed, retrying",
                    extra={
                        "operation": description,
                        "attempt": state.attempt,
                        "backoff_seconds": state.backoff_seconds,
                        "error": str(e),
                    },
                )

        await _wait(state.backoff_seconds, cancel_event, sleep)
        state.backoff_seconds = min(state.backoff_seconds * 2, policy.max_backoff_seconds)

    logger.error(
        "Max retries exceeded",
        extra={
            "operation": description,
            "attempts": state.attempt,
            "elapsed_seconds": state.elapsed_seconds,
        },
    )
    raise MaxRetriesExceededError(state.attempt, last_error)
