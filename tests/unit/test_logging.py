"""
Tests for structured logging setup.
"""

import json
import logging

import pytest

from hms_eventbus import logging as eventbus_logging
from hms_eventbus.logging import POISON_LOGGER_NAME, configure_logging, get_logger


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    level = root.level
    yield
    if eventbus_logging._handler is not None:
        root.removeHandler(eventbus_logging._handler)
        eventbus_logging._handler = None
    root.setLevel(level)
    logging.getLogger(POISON_LOGGER_NAME).setLevel(logging.NOTSET)


def last_json_line(output: str) -> dict:
    lines = [line for line in output.splitlines() if line.startswith("{")]
    return json.loads(lines[-1])


@pytest.mark.unit
@pytest.mark.usefixtures("restore_logging")
class TestConfigureLogging:
    """Test suite for configure_logging."""

    def test_stdlib_records_render_as_json(self, capsys):
        configure_logging("ordering", "INFO")

        logging.getLogger("hms_eventbus.events.event_bus").info("Published event %s", "e-1")

        record = last_json_line(capsys.readouterr().out)
        assert record["message"] == "Published event e-1"
        assert record["service"] == "ordering"
        assert record["level"] == "info"
        assert record["logger"] == "hms_eventbus.events.event_bus"
        assert "timestamp" in record

    def test_structlog_loggers_share_the_pipeline(self, capsys):
        configure_logging("ordering", "DEBUG")

        get_logger("ordering.api").info("order placed", order_id=7)

        record = last_json_line(capsys.readouterr().out)
        assert record["message"] == "order placed"
        assert record["order_id"] == 7
        assert record["service"] == "ordering"

    def test_level_filters_records(self, capsys):
        configure_logging("ordering", "WARNING")

        logging.getLogger("hms_eventbus.outbox").info("hidden")
        logging.getLogger("hms_eventbus.outbox").warning("shown")

        output = capsys.readouterr().out
        assert "hidden" not in output
        assert "shown" in output

    def test_poison_logger_never_silenced(self, capsys):
        configure_logging("ordering", "CRITICAL")

        logging.getLogger(POISON_LOGGER_NAME).error("Poison message m-1")

        assert "Poison message m-1" in capsys.readouterr().out

    def test_reconfiguring_replaces_the_handler(self, capsys):
        configure_logging("ordering", "INFO")
        configure_logging("ordering", "INFO")

        logging.getLogger("hms_eventbus").info("once")

        assert capsys.readouterr().out.count('"once"') == 1
