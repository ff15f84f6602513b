"""Error classification for retry decisions.

Maps arbitrary failures to one of three categories:
- deterministic: retrying with the same input cannot help (schema
  violations from a model, auth/validation/not-found responses)
- transient: network, timeout, rate limit and 5xx-class failures
- unknown: anything unrecognized; retried like transient

Typed checks run first; message heuristics are the fallback for errors
raised by libraries that only carry a status in their text.

Source:
- src/issueflow/agents/contracts.py (StructuredOutputError)
- src/issueflow/github/client.py (GitHubAPIError, RETRYABLE_STATUS_CODES)
"""

import asyncio
import json
from enum import Enum

import httpx
import yaml
from pydantic import ValidationError

from src.issueflow.agents.contracts import StructuredOutputError
from src.issueflow.github.client import GitHubAPIError, GitHubClient, RateLimitError


class ErrorCategory(str, Enum):
    """Retry category of a failure."""

    DETERMINISTIC = "deterministic"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


DETERMINISTIC_STATUS_CODES = {400, 401, 403, 404, 409, 422}

TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "eai_again",
    "enotfound",
    "socket hang up",
    "rate limit",
    "408",
    "429",
    "500",
    "502",
    "503",
    "504",
)

DETERMINISTIC_MARKERS = (
    "validation",
    "unauthorized",
    "forbidden",
    "not found",
    "400",
    "401",
    "403",
    "404",
    "409",
    "422",
)


def _unwrap(error: BaseException) -> BaseException:
    from src.issueflow.retry.engine import RetryExhaustedError

    while isinstance(error, RetryExhaustedError):
        error = error.last_error
    return error


def classify_error(error: BaseException) -> ErrorCategory:
    """Classify a failure for the retry engine.

    Args:
        error: The exception to classify. RetryExhaustedError is
            unwrapped to its last underlying error.

    Returns:
        The ErrorCategory for the error.
    """
    root = _unwrap(error)

    if isinstance(
        root,
        (StructuredOutputError, ValidationError, json.JSONDecodeError, yaml.YAMLError),
    ):
        return ErrorCategory.DETERMINISTIC

    if isinstance(
        root,
        (httpx.TimeoutException, httpx.NetworkError, asyncio.TimeoutError, ConnectionError),
    ):
        return ErrorCategory.TRANSIENT

    # GitHub reports primary rate limits as 403
    if isinstance(root, RateLimitError):
        return ErrorCategory.TRANSIENT

    if isinstance(root, GitHubAPIError) and root.status_code is not None:
        if root.status_code in GitHubClient.RETRYABLE_STATUS_CODES:
            return ErrorCategory.TRANSIENT
        if root.status_code in DETERMINISTIC_STATUS_CODES:
            return ErrorCategory.DETERMINISTIC

    message = str(root).lower()

    if any(marker in message for marker in TRANSIENT_MARKERS):
        return ErrorCategory.TRANSIENT

    if any(marker in message for marker in DETERMINISTIC_MARKERS):
        return ErrorCategory.DETERMINISTIC

    return ErrorCategory.UNKNOWN
