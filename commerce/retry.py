"""
Bounded retry for optimistic-concurrency conflicts
"""
import logging
import random
import time
from functools import wraps
from typing import Any, Callable

from .errors import ConcurrencyConflictError, VersionConflictError

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for conflict retry behavior"""
    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 0.01,
        max_delay: float = 0.5,
        exponential_base: float = 2.0,
        jitter: bool = True,
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        return cls(
            max_attempts=settings.conflict_retry_attempts,
            base_delay=settings.conflict_retry_base_delay,
        )


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)
    if config.jitter:
        delay *= (0.5 + random.random() * 0.5)
    return delay


def retry_on_conflict(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Run ``func`` again on VersionConflictError, up to ``config.max_attempts`` times.

    Any other exception propagates immediately. When every attempt conflicts,
    ConcurrencyConflictError is raised so the caller can retry the whole
    operation.
    """
    last_conflict = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except VersionConflictError as e:
            last_conflict = e
            if attempt == config.max_attempts:
                logger.error(f"Max conflict retries ({config.max_attempts}) reached for {func.__name__}")
                break
            delay = calculate_delay(attempt, config)
            logger.warning(
                f"Attempt {attempt}/{config.max_attempts} of {func.__name__} hit a version conflict: {e}. "
                f"Retrying in {delay:.3f}s"
            )
            time.sleep(delay)

    raise ConcurrencyConflictError(
        f"Conflict, retry: {func.__name__} did not commit after {config.max_attempts} attempts",
        context=last_conflict.context if last_conflict else None,
    )


def retry_decorator(config_getter: Callable[[Any], RetryConfig]):
    """Method decorator; ``config_getter`` receives ``self`` and returns the RetryConfig."""
    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            return retry_on_conflict(func, config_getter(self), self, *args, **kwargs)
        return wrapper
    return decorator
