"""Retry of transient infrastructure failures (store reads and writes).

Step retries are a different concern: they are driven by the caller and
bookkept by the execution engine, never by this module.
"""

import time
import random
from typing import Callable, Any, Optional, List, Type
from functools import wraps

from .exceptions import TransientError
from .logging import ErrorRecoveryLogger


class RetryPolicy:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 2.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False
        return any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            # Spread concurrent retries apart
            delay *= (0.5 + random.random() * 0.5)

        return delay


def with_retry(policy: Optional[RetryPolicy] = None):
    """Decorator to add retry logic to functions."""
    if policy is None:
        policy = RetryPolicy()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return _execute_with_retry(func, policy, *args, **kwargs)
        return wrapper

    return decorator


def _execute_with_retry(func: Callable, policy: RetryPolicy, *args, **kwargs) -> Any:
    """Execute function with retry logic."""
    recovery_logger = ErrorRecoveryLogger(func.__name__)

    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not policy.should_retry(e, attempt):
                if attempt > 1:
                    recovery_logger.log_recovery_failure(e, attempt)
                raise

            recovery_logger.log_recovery_attempt(e, attempt, policy.max_attempts)
            time.sleep(policy.get_delay(attempt))
            attempt += 1
