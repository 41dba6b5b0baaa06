"""Deepflow - multi-provider AI research workflows under spend control."""

__version__ = "0.1.0"
