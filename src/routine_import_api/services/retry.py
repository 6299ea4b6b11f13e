"""Retry utilities for backing-store calls with exponential backoff."""
import logging
from typing import Callable, TypeVar

from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

from routine_import_api.errors import RepositoryError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MIN_WAIT_SECONDS = 0.5
DEFAULT_MAX_WAIT_SECONDS = 4

_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "temporarily unavailable",
    "temporary failure in name resolution",
    "502",
    "503",
    "504",
)


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if a store failure is worth another attempt.

    Transient network and gateway failures are retried. Typed repository
    errors (lock conflicts, replayed idempotency keys) are answers from the
    store, not outages, and never retried.
    """
    if isinstance(exception, RepositoryError):
        return False

    error_str = str(exception).lower()
    exception_type = type(exception).__name__.lower()

    if "timeout" in exception_type or "connect" in exception_type:
        return True
    if "429" in error_str or ("rate" in error_str and "limit" in error_str):
        return True
    return any(marker in error_str for marker in _TRANSIENT_MARKERS)


def create_retry_decorator(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    min_wait_seconds: float = DEFAULT_MIN_WAIT_SECONDS,
    max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Create a retry decorator with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        min_wait_seconds: Minimum wait time between retries
        max_wait_seconds: Maximum wait time between retries

    Returns:
        A retry decorator configured with the specified parameters
    """
    return retry(
        retry=retry_if_exception(is_retryable_error),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=min_wait_seconds,
            max=max_wait_seconds,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


# Pre-configured retry decorator for Supabase RPC calls
store_retry = create_retry_decorator()
