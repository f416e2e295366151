"""Tests for logging configuration.

Tests verify:
- configure_logging sets up JSON logging on stdout and an optional file
- RunIDFilter adds run IDs to log records
- log_with_context adds context fields properly
"""

import json
import logging
from io import StringIO
from pathlib import Path

import pytest

from libs.common.logging.config import (
    RunIDFilter,
    configure_logging,
    get_logger,
    log_with_context,
)
from libs.common.logging.context import clear_run_id, set_run_id
from libs.common.logging.formatter import JSONFormatter


def _record(msg: str = "Test") -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="/path/to/file.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None,
    )


class TestRunIDFilter:
    """Test suite for RunIDFilter."""

    def setup_method(self) -> None:
        clear_run_id()

    def teardown_method(self) -> None:
        clear_run_id()

    def test_filter_adds_run_id_to_record(self) -> None:
        record = _record()

        set_run_id("run-123")
        result = RunIDFilter().filter(record)

        assert result is True
        assert record.run_id == "run-123"  # type: ignore[attr-defined]

    def test_filter_adds_none_when_no_run_id(self) -> None:
        record = _record()

        RunIDFilter().filter(record)

        assert record.run_id is None  # type: ignore[attr-defined]


class TestConfigureLogging:
    """Test suite for configure_logging."""

    def teardown_method(self) -> None:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers:
            handler.close()
        root_logger.handlers.clear()
        root_logger.setLevel(logging.WARNING)
        clear_run_id()

    def test_returns_root_logger(self) -> None:
        assert configure_logging(service_name="test") is logging.getLogger()

    def test_sets_log_level(self) -> None:
        logger = configure_logging(service_name="test", log_level="DEBUG")
        assert logger.level == logging.DEBUG

        logger = configure_logging(service_name="test", log_level="info")
        assert logger.level == logging.INFO

    def test_invalid_level_raises_error(self) -> None:
        with pytest.raises(ValueError, match="Invalid log level"):
            configure_logging(service_name="test", log_level="INVALID")

    def test_replaces_existing_handlers(self) -> None:
        logger = logging.getLogger()
        dummy_handler = logging.StreamHandler(StringIO())
        logger.addHandler(dummy_handler)

        configure_logging(service_name="test")

        assert dummy_handler not in logger.handlers
        assert len(logger.handlers) == 1

    def test_log_file_receives_json_lines(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "weekly-retrain.log"
        logger = configure_logging(service_name="weekly_retrain", log_file=log_file)

        set_run_id("run-abc")
        logging.getLogger("libs.model_lifecycle.test").info(
            "Saved model version", extra={"version_id": "v20240101_000000_abcdef"}
        )
        for handler in logger.handlers:
            handler.flush()

        lines = log_file.read_text(encoding="utf-8").strip().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["service"] == "weekly_retrain"
        assert entry["run_id"] == "run-abc"
        assert entry["message"] == "Saved model version"
        assert entry["context"] == {"version_id": "v20240101_000000_abcdef"}

    def test_outputs_json_through_stream_handler(self) -> None:
        stream = StringIO()
        logger = configure_logging(service_name="test_service")
        logger.handlers.clear()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JSONFormatter(service_name="test_service"))
        handler.addFilter(RunIDFilter())
        logger.addHandler(handler)

        set_run_id("run-xyz")
        logger.info("Test message")

        log_dict = json.loads(stream.getvalue().strip())
        assert log_dict["service"] == "test_service"
        assert log_dict["level"] == "INFO"
        assert log_dict["message"] == "Test message"
        assert log_dict["run_id"] == "run-xyz"


class TestLogWithContext:
    """Test suite for log_with_context and get_logger."""

    def test_get_logger_returns_named_logger(self) -> None:
        assert get_logger("libs.model_lifecycle").name == "libs.model_lifecycle"

    def test_context_fields_are_attached(self) -> None:
        logger = logging.getLogger("test_log_with_context")
        logger.propagate = False
        stream = StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JSONFormatter(service_name="svc"))
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        try:
            log_with_context(logger, "WARNING", "Model failed", model_index=3, error="boom")
        finally:
            logger.removeHandler(handler)

        entry = json.loads(stream.getvalue().strip())
        assert entry["level"] == "WARNING"
        assert entry["context"] == {"model_index": 3, "error": "boom"}
