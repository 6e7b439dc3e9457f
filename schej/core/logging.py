"""Centralized logging configuration for the availability engine."""

from __future__ import annotations

import logging
import sys


def setup_logging(level: int | str | None = None) -> None:
    """
    Configure logging for the application.

    This should be called once at startup by whatever process embeds the
    engine. All subsequent calls to logging.getLogger() will use this
    configuration.

    Args:
        level: Logging level. Defaults to the ``log_level`` setting.
    """
    if level is None:
        from schej.core.config import get_settings

        level = get_settings().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,  # Override any existing configuration
    )

