"""
Unit tests for logging setup.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from fleetplan.config import PlannerSettings
from fleetplan.logging import ROOT_LOGGER, JSONLFormatter, configure_logging, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    logger = logging.getLogger(ROOT_LOGGER)
    handlers = list(logger.handlers)
    level = logger.level
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)


class TestJSONLFormatter:
    """Tests for the JSON Lines formatter."""

    def test_includes_context(self) -> None:
        """Structured context lands in its own key."""
        record = logging.LogRecord(
            "fleetplan.coordinator", logging.ERROR, __file__, 1, "undelivered %s", ("r1",), None
        )
        record.context = {"services": ["auth"]}

        entry = json.loads(JSONLFormatter().format(record))

        assert entry["level"] == "ERROR"
        assert entry["logger"] == "fleetplan.coordinator"
        assert entry["message"] == "undelivered r1"
        assert entry["context"] == {"services": ["auth"]}


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_console_only(self) -> None:
        """Without a directory only the console handler is attached."""
        logger = setup_logging(level=logging.DEBUG)

        assert logger.name == ROOT_LOGGER
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1

    def test_file_output(self, tmp_path: Path) -> None:
        """With a directory records are written as JSONL."""
        logger = setup_logging(log_dir=tmp_path)

        logging.getLogger("fleetplan.planner").info("planned %d services", 3)
        for handler in logger.handlers:
            handler.flush()

        lines = (tmp_path / "fleetplan.log").read_text().splitlines()
        assert json.loads(lines[-1])["message"] == "planned 3 services"


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_uses_log_settings(self, tmp_path: Path) -> None:
        """Level and directory come from the [fleet.log] settings."""
        settings = PlannerSettings.model_validate(
            {"log": {"level": "debug", "directory": str(tmp_path)}}
        )

        logger = configure_logging(settings)

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
