# src/compress_pipeline/core/error_handling.py

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Optional

from .exceptions import TransientServiceError, classify_error
from .models import ErrorKind

# Called before each retry with (attempt, delay, error). Returning False stops retrying.
RetryHook = Callable[[int, float, BaseException], bool]


def retry_transient(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    before_retry: Optional[RetryHook] = None,
):
    """
    Decorator to retry async remote operations with exponential backoff.

    Only errors classified as transient are retried, up to ``max_attempts``
    total calls. Unknown errors get a single extra attempt. Every other kind
    is re-raised immediately. The number of attempts made is stored on the
    raised exception as ``attempts``.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            logger = logging.getLogger(func.__module__ + '.' + func.__name__)
            attempts = 0
            delay = initial_delay
            unknown_retried = False
            while True:
                attempts += 1
                try:
                    return await func(*args, **kwargs)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    info = classify_error(e)
                    e.attempts = attempts  # type: ignore[attr-defined]

                    if not info.retryable:
                        logger.debug(
                            f"'{func.__name__}' failed with non-retryable {info.kind.value} error: {e}"
                        )
                        raise

                    if info.kind == ErrorKind.UNKNOWN:
                        if unknown_retried:
                            logger.error(f"'{func.__name__}' failed twice with unknown error: {e}")
                            raise
                        unknown_retried = True

                    if attempts >= max_attempts:
                        logger.error(
                            f"'{func.__name__}' failed after {max_attempts} attempts. Error: {e}"
                        )
                        if info.kind == ErrorKind.TRANSIENT and not isinstance(e, TransientServiceError):
                            wrapped = TransientServiceError(
                                f"{info.message} (after {attempts} attempts)"
                            )
                            wrapped.attempts = attempts  # type: ignore[attr-defined]
                            raise wrapped from e
                        raise

                    if before_retry is not None and not before_retry(attempts, delay, e):
                        logger.warning(
                            f"'{func.__name__}' retry vetoed after attempt {attempts}. Error: {e}"
                        )
                        raise

                    logger.info(
                        f"'{func.__name__}' failed. Attempt {attempts}/{max_attempts}. "
                        f"Retrying in {delay:.2f}s. Error: {e}"
                    )
                    await sleep(delay)
                    delay *= backoff_factor
        return wrapper
    return decorator


class BatchOperationContextManager:
    """
    Context manager for batch operations to collect and summarize errors.
    """
    def __init__(self, operation_name="Batch Operation", logger=None):
        self.operation_name = operation_name
        self.errors = []
        self.logger = logger or logging.getLogger(
            self.__class__.__module__ + '.' + self.__class__.__name__
        )

    def __enter__(self):
        self.logger.info(f"Starting {self.operation_name}.")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.errors:
            self.logger.warning(
                f"{self.operation_name} completed with {len(self.errors)} error(s)."
            )
            for i, error_detail in enumerate(self.errors):
                item_identifier = error_detail.get('item', 'Unknown item')
                error_message = error_detail.get('error', 'Unknown error')
                self.logger.error(
                    f"  Error {i+1}/{len(self.errors)} for item '{item_identifier}': {error_message}"
                )
        elif exc_type:
            self.logger.error(
                f"{self.operation_name} failed due to an unhandled exception: {exc_val}"
            )
        else:
            self.logger.info(f"{self.operation_name} completed successfully.")

        # Exceptions raised inside the block always propagate.
        return False

    def add_error(self, error_message: str, item_identifier: str = "Unknown item"):
        """
        Report an error for a specific item.

        Args:
            error_message (str): The error message or exception string.
            item_identifier (str): A string identifying the item that failed (e.g., file path).
        """
        self.errors.append({"item": item_identifier, "error": str(error_message)})
        self.logger.debug(f"Error added for item '{item_identifier}' in {self.operation_name}: {error_message}")
