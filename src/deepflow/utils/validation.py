"""Redaction helpers for log output."""

from __future__ import annotations

import re

_DEFAULT_PATTERNS = [
    (r"sk-ant-[a-zA-Z0-9_-]{20,}", "[REDACTED_API_KEY]"),  # Anthropic keys
    (r"sk-[a-zA-Z0-9_-]{20,}", "[REDACTED_API_KEY]"),  # OpenAI / Mistral style keys
    (r"AIza[0-9A-Za-z_-]{30,}", "[REDACTED_API_KEY]"),  # Google API keys
    (r"(?<=key=)[A-Za-z0-9_-]{16,}", "[REDACTED]"),  # keys in query strings
    (r'authorization["\']?\s*[:=]\s*["\']?bearer\s+[^"\'\s]+', "authorization=[REDACTED]"),
    (r'api_key["\']?\s*[:=]\s*["\']?[^"\'\s,}]+', "api_key=[REDACTED]"),
]


def sanitize_log_message(message: str, sensitive_patterns: list[str] | None = None) -> str:
    """Sanitize a log message to remove credentials.

    Args:
        message: Message to sanitize
        sensitive_patterns: Additional patterns to redact

    Returns:
        Message with sensitive data redacted
    """
    result = message
    for pattern, replacement in _DEFAULT_PATTERNS:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)

    if sensitive_patterns:
        for pattern in sensitive_patterns:
            result = re.sub(pattern, "[REDACTED]", result, flags=re.IGNORECASE)

    return result
