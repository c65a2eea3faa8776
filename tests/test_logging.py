"""
Tests for logging configuration.

Test plan:
- JSON output: one JSON object per event with level, logger, timestamp
  and keyword fields
- Level filtering drops events below the configured level
- stdlib loggers share the same formatter
"""

import json
import logging
from collections.abc import Iterator

import pytest
import structlog

from treasury_bridge.logging_config import configure_logging


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def _lines(capsys: pytest.CaptureFixture[str]) -> list[dict[str, object]]:
    out = capsys.readouterr().out
    return [json.loads(line) for line in out.splitlines() if line.strip()]


class TestJsonOutput:
    def test_structlog_event(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging("INFO", json_output=True)

        structlog.get_logger("bridge.test").info("payment_verified", reference="ref-1")

        records = _lines(capsys)
        assert len(records) == 1
        record = records[0]
        assert record["event"] == "payment_verified"
        assert record["reference"] == "ref-1"
        assert record["level"] == "info"
        assert record["logger"] == "bridge.test"
        assert "timestamp" in record

    def test_level_filter(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging("WARNING", json_output=True)
        log = structlog.get_logger("bridge.filter")

        log.info("quiet")
        log.warning("loud")

        assert [r["event"] for r in _lines(capsys)] == ["loud"]

    def test_stdlib_logger(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging("INFO", json_output=True)

        logging.getLogger("bridge.stdlib").warning("plain message")

        record = _lines(capsys)[-1]
        assert record["event"] == "plain message"
        assert record["level"] == "warning"
