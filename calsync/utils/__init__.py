"""Utility helpers for calsync."""

from .helpers import ensure_utc, format_duration, truncate_string, utc_now
from .logging import get_logger, setup_logging

__all__ = [
    "ensure_utc",
    "format_duration",
    "get_logger",
    "setup_logging",
    "truncate_string",
    "utc_now",
]
