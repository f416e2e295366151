"""Logging setup for lifecycle jobs.

Example:
    >>> from libs.common.logging.config import configure_logging
    >>> logger = configure_logging(service_name="weekly_retrain", log_level="INFO")
    >>> logger.info("Retrain started", extra={"context": {"dry_run": True}})
"""

import logging
import sys
from pathlib import Path

from libs.common.logging.context import get_run_id
from libs.common.logging.formatter import JSONFormatter


class RunIDFilter(logging.Filter):
    """Inject the current run ID into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = get_run_id()
        return True


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    include_context: bool = True,
    log_file: Path | None = None,
) -> logging.Logger:
    """Configure structured JSON logging on the root logger.

    Logs go to stdout and, when ``log_file`` is given, are also appended to
    that file (cron jobs keep a per-job log next to the model store).

    Args:
        service_name: Name of the job (e.g., "weekly_retrain")
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_context: Whether to include the context dict in output
        log_file: Optional file to append JSON lines to

    Returns:
        Configured root logger

    Raises:
        ValueError: If log_level is invalid
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    formatter = JSONFormatter(service_name=service_name, include_context=include_context)
    run_filter = RunIDFilter()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        handler.addFilter(run_filter)
        root_logger.addHandler(handler)

    return root_logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger by name (typically ``__name__``)."""
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context_fields: object,
) -> None:
    """Log a message with structured context fields.

    Example:
        >>> log_with_context(logger, "WARNING", "Model failed", model_index=3)
    """
    log_method = getattr(logger, level.lower())
    log_method(message, extra={"context": context_fields})
