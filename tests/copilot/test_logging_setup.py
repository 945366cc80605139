"""Tests for loguru sink configuration."""

from __future__ import annotations

import sys

from loguru import logger

from chat_copilot.logging_setup import configure_logging


def test_file_sink_receives_debug(tmp_path):
    log_file = tmp_path / "copilot.log"
    try:
        configure_logging("warning", log_file=str(log_file))
        logger.debug("budget numbers")
        logger.warning("tolerated failure")
    finally:
        logger.remove()
        logger.add(sys.stderr)

    content = log_file.read_text(encoding="utf-8")
    assert "budget numbers" in content
    assert "tolerated failure" in content
    assert "| WARNING  |" in content
