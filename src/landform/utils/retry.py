"""Retry strategy with exponential backoff for provider calls."""

import time
import random
import threading
from typing import Callable, TypeVar, Optional
from functools import wraps
from landform.utils.errors import ErrorHandler, error_handler
from landform.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Implements bounded exponential backoff for transient errors.

    Whether an error is transient is decided by the ErrorHandler: transient
    provider errors, throttling AWS error codes and connectivity failures.
    """

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        cancel_event: Optional[threading.Event] = None,
        handler: Optional[ErrorHandler] = None
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            cancel_event: When set, pending backoff sleeps end and no retry is made
            handler: Error handler used to classify errors
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.cancel_event = cancel_event
        self.handler = handler or error_handler

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is retryable and max retries not exceeded
        """
        if attempt >= self.max_retries:
            return False

        if self.cancel_event is not None and self.cancel_event.is_set():
            return False

        return self.handler.is_transient(error)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Jitter: random value between 0 and 10% of delay
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            The last exception if it is not retryable or retries are exhausted
        """
        attempt = 0
        while True:
            try:
                result = func(*args, **kwargs)

                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")

                return result

            except Exception as e:
                if not self.should_retry(e, attempt):
                    if attempt >= self.max_retries and self.handler.is_transient(e):
                        logger.error(f"All {self.max_retries} retry attempts exhausted")
                    else:
                        logger.debug(f"Error is not retryable: {e}")
                    raise

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed: "
                    f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s..."
                )

                if self._sleep(delay):
                    logger.warning("Retry abandoned: operation cancelled")
                    raise

                attempt += 1

    def _sleep(self, delay: float) -> bool:
        """Sleep for the backoff delay; returns True if cancelled meanwhile."""
        if self.cancel_event is None:
            time.sleep(delay)
            return False
        return self.cancel_event.wait(delay)


def with_retry(
    max_retries: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
):
    """Decorator to add retry logic to a function.

    Example:
        @with_retry(max_retries=3, base_delay=2.0)
        def put_lock_item(client, item):
            return client.put_item(**item)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            strategy = RetryStrategy(
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                jitter=jitter
            )
            return strategy.execute_with_retry(func, *args, **kwargs)

        return wrapper

    return decorator
