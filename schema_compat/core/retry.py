"""
Retry mechanism with exponential backoff for store operations.

This module provides retry logic for handling transient failures while talking
to MongoDB, with configurable backoff and error classification.
"""
import asyncio
import functools
from collections.abc import Callable
from typing import Any

from pymongo.errors import ConnectionFailure

from schema_compat.core.config import settings
from schema_compat.core.exceptions import StoreUnavailable
from schema_compat.log.logging import logger

# AutoReconnect, NetworkTimeout and ServerSelectionTimeoutError all derive from ConnectionFailure
TRANSIENT_STORE_ERRORS = (ConnectionFailure,)


class MaxRetriesExceededError(Exception):
    """
    Exception raised when maximum retry attempts are exhausted.
    """
    def __init__(self, message: str, last_error: Exception, attempts: int):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


def calculate_backoff_delay(attempt: int, base_delay: float = None, max_delay: float = None) -> float:
    """
    Calculate exponential backoff delay for a given attempt.

    Args:
        attempt: Current attempt number (1-indexed).
        base_delay: Base delay in seconds (default from config).
        max_delay: Maximum delay in seconds (default from config).

    Returns:
        Delay in seconds before next retry.
    """
    base = settings.retry_base_delay if base_delay is None else base_delay
    maximum = settings.retry_max_delay if max_delay is None else max_delay

    # Exponential backoff: base * 2^(attempt-1)
    delay = base * (2 ** (attempt - 1))
    return min(delay, maximum)


def translate_store_errors(func: Callable) -> Callable:
    """
    Decorator mapping pymongo connection errors to StoreUnavailable.

    Usage:
        @translate_store_errors
        async def _fetch(self, ...):
            ...
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except TRANSIENT_STORE_ERRORS as e:
            raise StoreUnavailable(f"Store unavailable: {e}", operation=func.__name__) from e
    return wrapper


async def retry_with_backoff(
    func: Callable,
    *args,
    max_retries: int = None,
    retryable_exceptions: tuple[type[Exception], ...] = (StoreUnavailable,),
    on_retry: Callable[[int, Exception], Any] | None = None,
    **kwargs
) -> Any:
    """
    Execute a function with retry and exponential backoff.

    Args:
        func: Async function to execute.
        *args: Arguments to pass to the function.
        max_retries: Maximum number of retry attempts (default from config).
        retryable_exceptions: Tuple of exception types that trigger a retry.
        on_retry: Optional callback called on each retry (attempt, exception).
        **kwargs: Keyword arguments to pass to the function.

    Returns:
        Result of the function if successful.

    Raises:
        MaxRetriesExceededError: If max retries are exhausted.
        Exception: Any non-retryable exception is propagated unchanged.
    """
    retries = settings.max_retries if max_retries is None else max_retries
    max_attempts = retries + 1  # +1 for initial attempt
    last_error = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)

        except retryable_exceptions as e:
            last_error = e

            if attempt >= max_attempts:
                logger.error(
                    "Max retries exceeded for function {func_name}",
                    func_name=getattr(func, "__name__", repr(func)),
                    attempts=attempt,
                    error=str(e),
                    event_type="retry_exhausted"
                )
                raise MaxRetriesExceededError(
                    f"Max retries ({max_attempts}) exceeded: {str(e)}",
                    last_error=e,
                    attempts=attempt
                ) from e

            delay = calculate_backoff_delay(attempt)

            logger.warning(
                "Retrying {func_name} after {delay}s (attempt {attempt}/{max_attempts})",
                func_name=getattr(func, "__name__", repr(func)),
                delay=delay,
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(e),
                event_type="retry_attempt"
            )

            if on_retry:
                on_retry(attempt, e)

            await asyncio.sleep(delay)

    # Should not reach here, but just in case
    raise MaxRetriesExceededError(
        "Max retries exceeded",
        last_error=last_error,
        attempts=max_attempts
    )


def with_retry(
    max_retries: int = None,
    retryable_exceptions: tuple[type[Exception], ...] = (StoreUnavailable,)
):
    """
    Decorator to add retry logic with exponential backoff to async functions.

    Usage:
        @with_retry(max_retries=3)
        async def my_function():
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_with_backoff(
                func,
                *args,
                max_retries=max_retries,
                retryable_exceptions=retryable_exceptions,
                **kwargs
            )
        return wrapper
    return decorator
