"""Bounded retry with exponential backoff for collaborator calls.

This module implements the retry executor used by the pipeline driver
and the task scheduler around every planning and execution call:
- Attempts are numbered from 1 and passed to the wrapped operation
- Failures classified as deterministic stop retrying immediately
- Backoff doubles per attempt, is capped, and carries a small jitter
- Exhaustion raises RetryExhaustedError, never a silent fallback

The backoff shape follows GitHubClient._calculate_backoff, but with an
additive jitter instead of full jitter so the recorded backoff is a
lower bound of the actual sleep.

Source:
- src/issueflow/retry/classifier.py (ErrorCategory, classify_error)
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from src.issueflow.retry.classifier import ErrorCategory


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound (exclusive) of the jitter added to each backoff sleep
JITTER_MS = 50


class RetryExhaustedError(Exception):
    """Raised when an operation fails and no retry budget remains.

    The message mirrors the last underlying error so callers that only
    log str(exc) still see the root cause.

    Attributes:
        last_error: The exception raised by the final attempt.
        attempts: Number of attempts made (always >= 1).
        last_backoff_ms: The last computed backoff in milliseconds
            (0 if no backoff was ever computed).
        category: Classification of the last error, if a classifier ran.
    """

    def __init__(
        self,
        last_error: BaseException,
        attempts: int,
        last_backoff_ms: int,
        category: Optional[ErrorCategory] = None,
    ):
        self.last_error = last_error
        self.attempts = attempts
        self.last_backoff_ms = last_backoff_ms
        self.category = category
        super().__init__(str(last_error) or type(last_error).__name__)


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Successful outcome of with_retry."""

    value: T
    attempts: int
    last_backoff_ms: int


def compute_backoff_ms(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    factor: float = 2,
) -> int:
    """Backoff before the attempt after ``attempt`` (1-indexed), without jitter."""
    return int(min(max_delay_ms, base_delay_ms * factor ** (attempt - 1)))


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    *,
    retries: int,
    base_delay_ms: int,
    max_delay_ms: int,
    factor: float = 2,
    classify: Optional[Callable[[BaseException], ErrorCategory]] = None,
    on_retry: Optional[Callable[[int, BaseException, int], Any]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryResult[T]:
    """Run ``operation`` with up to ``retries`` additional attempts.

    Args:
        operation: Async callable receiving the 1-indexed attempt number.
        retries: Retry budget on top of the first attempt.
        base_delay_ms: Backoff before the second attempt.
        max_delay_ms: Cap applied to every computed backoff.
        factor: Multiplier applied per attempt.
        classify: Optional error classifier. A ``deterministic`` verdict
            stops retrying regardless of remaining budget.
        on_retry: Optional hook called as ``on_retry(attempt, error,
            backoff_ms)`` before each backoff sleep.
        sleep: Sleep coroutine, injectable for tests.

    Returns:
        RetryResult with the operation's value and attempt accounting.

    Raises:
        RetryExhaustedError: When the budget is used up or a
            deterministic error short-circuits the loop.
    """
    if retries < 0:
        raise ValueError("retries must be >= 0")

    max_attempts = retries + 1
    last_backoff_ms = 0
    attempt = 0

    while True:
        attempt += 1
        try:
            value = await operation(attempt)
            return RetryResult(
                value=value,
                attempts=attempt,
                last_backoff_ms=last_backoff_ms,
            )
        except Exception as exc:
            category = classify(exc) if classify is not None else None

            if category == ErrorCategory.DETERMINISTIC:
                logger.warning(
                    "Deterministic failure, not retrying",
                    extra={"attempt": attempt, "error": str(exc)},
                )
                raise RetryExhaustedError(
                    exc, attempt, last_backoff_ms, category
                ) from exc

            if attempt >= max_attempts:
                logger.warning(
                    "Retry budget exhausted",
                    extra={
                        "attempts": attempt,
                        "last_backoff_ms": last_backoff_ms,
                        "error": str(exc),
                    },
                )
                raise RetryExhaustedError(
                    exc, attempt, last_backoff_ms, category
                ) from exc

            last_backoff_ms = compute_backoff_ms(
                attempt, base_delay_ms, max_delay_ms, factor
            )
            if on_retry is not None:
                on_retry(attempt, exc, last_backoff_ms)

            delay_ms = last_backoff_ms + random.uniform(0, JITTER_MS)
            logger.info(
                "Retrying after failure",
                extra={
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "backoff_ms": last_backoff_ms,
                    "category": category.value if category else None,
                },
            )
            await sleep(delay_ms / 1000.0)
