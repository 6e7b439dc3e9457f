"""
Timing logger utility for provider call performance debugging.
Emits step timings on the ``schej.timing`` logger.
Only logs when the ``enable_timing_logger`` setting is on.
"""

from __future__ import annotations

import logging
from typing import Optional

from schej.core.config import get_settings

_timing_logger = logging.getLogger("schej.timing")


def _is_enabled() -> bool:
    """Check if timing logging is enabled via settings."""
    return get_settings().enable_timing_logger


class TimingLogger:
    """Timing logger that writes step durations to a dedicated logger."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or _timing_logger

    def log(self, step: str, duration: Optional[float] = None, details: Optional[str] = None):
        """
        Log a timing step.

        Args:
            step: Name of the step
            duration: Duration in seconds (if None, marks start of step)
            details: Optional additional details
        """
        if not _is_enabled():
            return

        message = f"{step}: {duration:.3f}s" if duration is not None else f"{step}: START"
        if details:
            message = f"{message} | {details}"
        self.logger.info(message)

    def log_step(self, step: str, duration: float, details: Optional[str] = None):
        """Log a completed step with duration."""
        self.log(step, duration=duration, details=details)

    def log_start(self, step: str, details: Optional[str] = None):
        """Log the start of a step."""
        self.log(step, duration=None, details=details)


# Global timing logger instance
_timing = TimingLogger()


def log_step(step: str, duration: float, details: Optional[str] = None) -> None:
    """Log a completed step with duration."""
    _timing.log_step(step, duration, details)


def log_start(step: str, details: Optional[str] = None) -> None:
    """Log the start of a step."""
    _timing.log_start(step, details)
