"""Configuration module for Deepflow."""

from .logging import (
    ContextFilter,
    JSONFormatter,
    SanitizingFilter,
    TextFormatter,
    configure_logging,
    log_context,
)
from .settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "log_context",
    "ContextFilter",
    "JSONFormatter",
    "SanitizingFilter",
    "TextFormatter",
]
