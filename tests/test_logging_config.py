"""
Test suite for logging_config module
"""

import json
import logging
import pytest

from lending_engine.logging_config import JSONFormatter, setup_logging, get_logger, log_action


class ListHandler(logging.Handler):
    """Collects formatted records"""

    def __init__(self):
        super().__init__()
        self.lines = []

    def emit(self, record):
        self.lines.append(self.format(record))


@pytest.fixture
def captured():
    """Logger with a JSON list handler, detached from the application logger"""
    logger = logging.getLogger("lending_tests.structured")
    handler = ListHandler()
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    yield logger, handler
    logger.removeHandler(handler)


class TestJSONFormatter:
    """Test structured log lines"""

    def test_plain_message(self, captured):
        logger, handler = captured
        logger.warning("Late fee drift on loan %s", "LOAN001")

        entry = json.loads(handler.lines[0])
        assert entry["level"] == "WARNING"
        assert entry["message"] == "Late fee drift on loan LOAN001"
        assert "action" not in entry
        assert "timestamp" in entry

    def test_exception_included(self, captured):
        logger, handler = captured
        try:
            raise ValueError("boom")
        except ValueError:
            logger.error("Recalculation failed", exc_info=True)

        entry = json.loads(handler.lines[0])
        assert "ValueError: boom" in entry["exception"]


class TestLogAction:
    """Test log_action"""

    def test_structured_fields(self, captured):
        logger, handler = captured
        log_action(logger, "info", "Recorded payment", action="record_payment", resource="LOAN001",
                   user_id="teller", correlation_id="req-1", extra={"late_fee": "100.00"})

        entry = json.loads(handler.lines[0])
        assert entry["message"] == "Recorded payment"
        assert entry["action"] == "record_payment"
        assert entry["resource"] == "LOAN001"
        assert entry["user_id"] == "teller"
        assert entry["correlation_id"] == "req-1"
        assert entry["extra"] == {"late_fee": "100.00"}

    def test_disabled_level_is_skipped(self, captured):
        logger, handler = captured
        log_action(logger, "debug", "Not emitted")

        assert handler.lines == []


class TestSetupLogging:
    """Test setup_logging"""

    def test_setup_replaces_handlers(self):
        logger = setup_logging("DEBUG", logger_name="lending_tests.setup")
        logger = setup_logging("WARNING", logger_name="lending_tests.setup")

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.level == logging.WARNING
        assert logger.propagate is False
        assert get_logger("lending_tests.setup") is logger

    def test_text_format_to_file(self, tmp_path):
        log_file = tmp_path / "lending.log"
        logger = setup_logging("INFO", logger_name="lending_tests.file", fmt="text", log_file=str(log_file))

        logger.info("Originated loan %s", "LOAN001")
        for handler in logger.handlers:
            handler.flush()
            handler.close()
        logger.handlers.clear()

        content = log_file.read_text()
        assert "INFO lending_tests.file: Originated loan LOAN001" in content
