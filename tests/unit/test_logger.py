"""
Unit tests for logging setup (core/logger.py)
"""

import json
import logging

import pytest
import structlog

from ore_learner.core.config import LogConfig
from ore_learner.core.logger import get_logger, round_context, setup_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler.get_name() == "ore_learner":
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    structlog.reset_defaults()


def _own_handlers():
    return [h for h in logging.getLogger().handlers if h.get_name() == "ore_learner"]


def test_repeated_setup_keeps_one_set_of_handlers(restore_logging, tmp_path):
    config = LogConfig(level="DEBUG", format="console", output_file=str(tmp_path / "a.log"))

    setup_logging(config)
    setup_logging(config)

    assert len(_own_handlers()) == 2
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("aiohttp").level == logging.WARNING


def test_json_lines_carry_round_context(restore_logging, tmp_path):
    log_file = tmp_path / "logs" / "learner.log"
    setup_logging(LogConfig(level="INFO", format="json", output_file=str(log_file)))
    logger = get_logger("ore_learner.test_logger")

    with round_context(42):
        logger.info("round_resolved", winning_square=7)
    logger.info("poll_completed")
    logger.debug("hidden_at_info")

    lines = [json.loads(line) for line in log_file.read_text().splitlines()]
    assert [line["event"] for line in lines] == ["round_resolved", "poll_completed"]
    assert lines[0]["round_id"] == 42
    assert lines[0]["level"] == "info"
    assert "timestamp" in lines[0]
    assert "round_id" not in lines[1]
