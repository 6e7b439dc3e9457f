"""Tests for logging setup and the timing logger."""

import logging

import pytest

from schej.core import timing_logger
from schej.core.config import Settings
from schej.core.logging import setup_logging


def test_setup_logging_applies_level():
    setup_logging("WARNING")

    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("schej.test").getEffectiveLevel() == logging.WARNING

    setup_logging("INFO")


@pytest.mark.parametrize("enabled", [True, False])
def test_timing_logger_respects_setting(monkeypatch, caplog, enabled):
    monkeypatch.setattr(
        timing_logger,
        "get_settings",
        lambda: Settings(_env_file=None, enable_timing_logger=enabled),
    )

    with caplog.at_level(logging.INFO, logger="schej.timing"):
        timing_logger.log_start("provider.fetch", details="calendar=primary")
        timing_logger.log_step("provider.fetch", 0.25, details="calendar=primary")

    messages = [record.getMessage() for record in caplog.records if record.name == "schej.timing"]
    if enabled:
        assert messages == [
            "provider.fetch: START | calendar=primary",
            "provider.fetch: 0.250s | calendar=primary",
        ]
    else:
        assert messages == []
