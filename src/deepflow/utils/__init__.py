"""Shared utilities."""

from .retry import RetryConfig, async_with_retry, is_retryable_error, retry_async_call
from .validation import sanitize_log_message

__all__ = [
    "RetryConfig",
    "async_with_retry",
    "is_retryable_error",
    "retry_async_call",
    "sanitize_log_message",
]
