"""Retry helpers with exponential backoff for transient provider failures.

Provider adapters never retry on their own; the orchestrator opts in through
``Settings.step_max_retries`` and wraps each step call with these helpers.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import wraps
from typing import TypeVar

from deepflow.errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP status codes that should trigger retries
RETRYABLE_STATUS_CODES = frozenset(
    {
        408,  # Request Timeout
        429,  # Too Many Requests (rate limit)
        500,  # Internal Server Error
        502,  # Bad Gateway
        503,  # Service Unavailable
        504,  # Gateway Timeout
    }
)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 0
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt number (0-indexed)."""
        delay = self.base_delay * (self.exponential_base**attempt)
        delay = min(delay, self.max_delay)
        if self.jitter:
            # Add up to 25% jitter
            delay = delay * (0.75 + random.random() * 0.5)
        return delay


def is_retryable_error(exc: Exception) -> bool:
    """Check if an exception represents a transient provider failure."""
    if not isinstance(exc, ProviderError):
        return False
    if exc.retryable:
        return True
    return exc.status_code in RETRYABLE_STATUS_CODES


async def retry_async_call(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig,
    operation: str = "operation",
    on_retry: Callable[[Exception, int], None] | None = None,
    should_retry: Callable[[Exception], bool] = is_retryable_error,
) -> T:
    """Await ``func`` and retry transient provider errors.

    Non-retryable errors and the final failure are re-raised unchanged so
    callers see the original ``ProviderError``.
    """
    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except ProviderError as exc:
            if not should_retry(exc) or attempt >= config.max_retries:
                if attempt:
                    logger.warning(
                        "Giving up on %s after %d attempts: %s", operation, attempt + 1, exc
                    )
                raise

            delay = config.calculate_delay(attempt)
            retry_after = getattr(exc, "retry_after", None)
            if retry_after:
                delay = max(delay, min(retry_after, config.max_delay))
            logger.info(
                "Async retry %d/%d for %s after %.2fs: %s",
                attempt + 1,
                config.max_retries,
                operation,
                delay,
                exc,
            )
            if on_retry:
                on_retry(exc, attempt)
            await asyncio.sleep(delay)

    raise RuntimeError(f"Unexpected state in retry loop for {operation}")


def async_with_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    on_retry: Callable[[Exception, int], None] | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Async decorator form of :func:`retry_async_call`.

    Example:
        @async_with_retry(max_retries=3, base_delay=1.0)
        async def call_provider():
            return await registry.generate(request)
    """
    config = RetryConfig(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
        jitter=jitter,
    )

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await retry_async_call(
                lambda: func(*args, **kwargs),
                config,
                operation=func.__name__,
                on_retry=on_retry,
            )

        return wrapper

    return decorator
