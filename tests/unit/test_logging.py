"""Tests for structured logging setup."""
import json
import logging

import pytest

from prompt_chain.observability import get_logger, setup_logging, with_trace_context


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def test_json_logs_carry_trace_fields(capsys, restore_root_logger):
    setup_logging(level=logging.INFO, json_format=True)
    logger = get_logger("prompt_chain.test")

    extra = with_trace_context(logger, run_id="r1", pipeline_name="demo", step_name="a")
    logger.info("step_start", extra=extra)

    line = capsys.readouterr().err.strip().splitlines()[-1]
    record = json.loads(line)
    assert record["message"] == "step_start"
    assert record["run_id"] == "r1"
    assert record["pipeline_name"] == "demo"
    assert record["step_name"] == "a"
    assert "attempt" not in record


def test_plain_text_logs(capsys, restore_root_logger):
    setup_logging(level=logging.INFO, json_format=False)

    get_logger("prompt_chain.test").warning("something happened")

    assert "something happened" in capsys.readouterr().err


def test_level_filters_records(capsys, restore_root_logger):
    setup_logging(level=logging.ERROR, json_format=False)

    get_logger("prompt_chain.test").info("quiet please")

    assert "quiet please" not in capsys.readouterr().err
