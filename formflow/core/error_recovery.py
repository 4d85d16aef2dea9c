"""Retrying store writes that fail for transient reasons."""

import logging
import random
import time
from functools import wraps
from typing import Callable, Optional, Sequence, Tuple, Type

from .exceptions import StorageError, WorkflowEngineError
from .logging import get_logger, log_with_context

logger = get_logger(__name__)

# TransientError is a StorageError, so both are covered.
RETRYABLE_ERRORS: Tuple[Type[Exception], ...] = (StorageError,)


class RetryConfig:
    """
    Backoff policy for a retried operation.

    The delay after attempt ``n`` is ``base_delay * multiplier ** (n - 1)``,
    capped at ``max_delay``. With jitter the delay is scaled into the upper
    half of that value.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 5.0,
        multiplier: float = 2.0,
        jitter: bool = True,
        retry_on: Optional[Sequence[Type[Exception]]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self.retry_on = tuple(retry_on) if retry_on else RETRYABLE_ERRORS

    def is_retryable(self, error: Exception) -> bool:
        if not isinstance(error, self.retry_on):
            return False
        if isinstance(error, WorkflowEngineError):
            return error.recoverable
        return True

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay


def with_retry(config: Optional[RetryConfig] = None) -> Callable:
    """
    Decorator re-running a function while it raises a retryable error.

    The last error is re-raised once the attempts are used up; errors that
    are not retryable are raised immediately.
    """
    policy = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not policy.is_retryable(e):
                        raise
                    if attempt >= policy.max_attempts:
                        log_with_context(
                            logger, logging.ERROR,
                            f"{func.__name__} failed after {attempt} attempt(s): {str(e)}",
                            operation=func.__name__,
                            attempts=attempt,
                            error_type=type(e).__name__
                        )
                        raise

                    delay = policy.delay_for(attempt)
                    log_with_context(
                        logger, logging.WARNING,
                        f"{func.__name__} failed (attempt {attempt}/{policy.max_attempts}), "
                        f"retrying in {delay:.2f}s: {str(e)}",
                        operation=func.__name__,
                        attempt=attempt,
                        error_type=type(e).__name__
                    )
                    time.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
