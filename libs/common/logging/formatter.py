"""JSON log formatter for lifecycle jobs.

Example log output:
    {
        "timestamp": "2024-01-07T02:00:00.000Z",
        "level": "INFO",
        "service": "weekly_retrain",
        "logger": "libs.model_lifecycle.version_store",
        "run_id": "3f9a0c1d22b4",
        "message": "Saved model version",
        "context": {
            "version_id": "v20240107_020000_a1b2c3",
            "num_models": 5
        }
    }
"""

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Attributes present on every LogRecord; anything else was passed via ``extra``.
_RECORD_ATTRIBUTES = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "taskName",
    "run_id",
    "context",
}


def _utc_timestamp(created: float) -> str:
    dt = datetime.fromtimestamp(created, tz=UTC)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JSONFormatter(logging.Formatter):
    """Render each record as one JSON object per line.

    Structured fields reach the ``context`` object either as
    ``extra={"context": {...}}`` or as plain ``extra`` keys; both forms may
    be mixed, with the explicit ``context`` dict winning on key clashes.

    Attributes:
        service_name: Job emitting the logs (one per CLI command)
        include_context: Whether to emit the ``context`` object
    """

    def __init__(self, service_name: str, include_context: bool = True, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.service_name = service_name
        self.include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": _utc_timestamp(record.created),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "run_id": getattr(record, "run_id", None),
            "message": record.getMessage(),
        }

        if self.include_context:
            context = self.collect_context(record)
            if context:
                entry["context"] = context

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
            }

        entry["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }
        return json.dumps(entry, default=str)

    @staticmethod
    def collect_context(record: logging.LogRecord) -> dict[str, Any]:
        """Merge loose ``extra`` keys with an explicit ``context`` dict."""
        context = {
            key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRIBUTES
        }
        explicit = getattr(record, "context", None)
        if isinstance(explicit, dict):
            context.update(explicit)
        return context
