"""Utility functions and helpers."""

from bulletproof.core.utils.utils import first_non_empty, format_bytes, format_duration

__all__ = ["first_non_empty", "format_bytes", "format_duration"]
