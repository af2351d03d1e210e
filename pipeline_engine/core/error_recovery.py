"""Retry and backoff policy for node invocations and storage writes."""

import asyncio
import random
import time
from functools import wraps
from typing import Any, Callable, List, Optional, Type

from .exceptions import (
    ProviderError, RateLimitedError, ServiceTimeoutError, StorageError, WorkflowEngineError
)
from .logging import ErrorRecoveryLogger, get_logger


logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior.

    ``max_attempts`` counts every invocation, the first one included.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [
            ServiceTimeoutError, RateLimitedError, ProviderError
        ]

    def is_retryable(self, exception: BaseException) -> bool:
        """Classify an error independently of the attempt count."""
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable
        return any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions)

    def should_retry(self, exception: BaseException, attempt: int) -> bool:
        """Determine if an exception raised on the given attempt should be retried."""
        if attempt >= self.max_attempts:
            return False
        return self.is_retryable(exception)

    def get_delay(self, attempt: int, exception: Optional[BaseException] = None) -> float:
        """Calculate delay before the attempt following ``attempt``."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        retry_after = getattr(exception, "retry_after", None)
        if retry_after:
            delay = max(delay, min(float(retry_after), self.max_delay))

        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator to add retry logic to blocking functions."""
    if config is None:
        config = RetryConfig(retryable_exceptions=[StorageError])

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return _execute_with_retry(func, config, *args, **kwargs)
        return wrapper

    return decorator


def _execute_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Execute function with retry logic."""
    recovery_logger = ErrorRecoveryLogger(func.__name__)

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = func(*args, **kwargs)
            if attempt > 1:
                recovery_logger.log_recovery_success(func.__name__, attempt)
            return result
        except Exception as e:
            if not config.should_retry(e, attempt):
                recovery_logger.log_recovery_failure(func.__name__, e, attempt)
                raise

            delay = config.get_delay(attempt, e)
            recovery_logger.log_recovery_attempt(func.__name__, e, attempt, config.max_attempts, delay)
            time.sleep(delay)


async def sleep_unless_cancelled(delay: float, cancel: asyncio.Event) -> bool:
    """Sleep for delay seconds; return True early if cancel is set."""
    if cancel.is_set():
        return True
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False
