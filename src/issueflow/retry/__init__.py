"""Retry engine and error classification.

Collaborator calls are wrapped in with_retry; classify_error decides
whether a failure is worth retrying.
"""

from src.issueflow.retry.classifier import ErrorCategory, classify_error
from src.issueflow.retry.engine import (
    RetryExhaustedError,
    RetryResult,
    compute_backoff_ms,
    with_retry,
)

__all__ = [
    "ErrorCategory",
    "RetryExhaustedError",
    "RetryResult",
    "classify_error",
    "compute_backoff_ms",
    "with_retry",
]
