"""Observability module for tweeplay.

Provides structured logging.
"""

from tweeplay.observability.logging import (
    close_file_logging,
    configure_logging,
    get_log_file,
    get_logger,
)

__all__ = [
    "close_file_logging",
    "configure_logging",
    "get_log_file",
    "get_logger",
]
