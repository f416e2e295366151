"""Tests for JSON log formatter.

Tests verify that logs are formatted with:
- Required schema fields (timestamp, level, service, run_id, message)
- Context from ``extra={"context": ...}`` or loose ``extra`` keys
- Exception information and source location
"""

import json
import logging
import sys
from datetime import UTC, datetime

import pytest

from libs.common.logging.formatter import JSONFormatter


def _record(msg: str = "Test", level: int = logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="/path/to/file.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Test suite for JSONFormatter."""

    @pytest.fixture
    def formatter(self) -> JSONFormatter:
        return JSONFormatter(service_name="weekly_retrain")

    def test_basic_log_format(self, formatter: JSONFormatter) -> None:
        record = _record("Saved model version")
        record.run_id = "run-123"

        log_dict = json.loads(formatter.format(record))

        assert log_dict["level"] == "INFO"
        assert log_dict["service"] == "weekly_retrain"
        assert log_dict["run_id"] == "run-123"
        assert log_dict["message"] == "Saved model version"

    def test_timestamp_is_iso8601_utc(self, formatter: JSONFormatter) -> None:
        timestamp = json.loads(formatter.format(_record()))["timestamp"]

        assert timestamp.endswith("Z")
        dt = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        assert dt.tzinfo == UTC

    def test_missing_run_id_is_none(self, formatter: JSONFormatter) -> None:
        assert json.loads(formatter.format(_record()))["run_id"] is None

    def test_context_dict_is_emitted(self, formatter: JSONFormatter) -> None:
        record = _record()
        record.context = {"version_id": "v20240101_000000_abcdef", "num_models": 5}

        log_dict = json.loads(formatter.format(record))

        assert log_dict["context"] == {"version_id": "v20240101_000000_abcdef", "num_models": 5}

    def test_loose_extra_fields_become_context(self, formatter: JSONFormatter) -> None:
        record = _record()
        record.test_id = "test_1_abcd"
        record.decision = "DEPLOY"

        log_dict = json.loads(formatter.format(record))

        assert log_dict["context"] == {"test_id": "test_1_abcd", "decision": "DEPLOY"}

    def test_no_context_when_disabled(self) -> None:
        formatter = JSONFormatter(service_name="test", include_context=False)
        record = _record()
        record.context = {"symbol": "AAPL"}

        assert "context" not in json.loads(formatter.format(record))

    def test_no_context_key_without_extras(self, formatter: JSONFormatter) -> None:
        assert "context" not in json.loads(formatter.format(_record()))

    def test_exception_information(self, formatter: JSONFormatter) -> None:
        try:
            raise ValueError("bad artifact")
        except ValueError:
            record = _record("Failed", level=logging.ERROR, exc_info=sys.exc_info())

        log_dict = json.loads(formatter.format(record))

        assert log_dict["exception"]["type"] == "ValueError"
        assert log_dict["exception"]["message"] == "bad artifact"
        assert "Traceback" in log_dict["exception"]["traceback"]

    def test_source_location(self, formatter: JSONFormatter) -> None:
        record = _record()
        record.funcName = "save_version"

        source = json.loads(formatter.format(record))["source"]

        assert source == {"file": "/path/to/file.py", "line": 42, "function": "save_version"}

    def test_non_serializable_values_use_str(self, formatter: JSONFormatter) -> None:
        record = _record()
        record.context = {"when": datetime(2024, 1, 1, tzinfo=UTC)}

        log_dict = json.loads(formatter.format(record))

        assert log_dict["context"]["when"] == "2024-01-01 00:00:00+00:00"

    def test_loose_extras_and_context_dict_are_merged(self, formatter: JSONFormatter) -> None:
        record = _record()
        record.version_id = "v20240101_000000_abcdef"
        record.context = {"num_models": 5, "version_id": "override"}

        log_dict = json.loads(formatter.format(record))

        assert log_dict["context"] == {"version_id": "override", "num_models": 5}

    def test_logger_name_is_emitted(self, formatter: JSONFormatter) -> None:
        assert json.loads(formatter.format(_record()))["logger"] == "test"
