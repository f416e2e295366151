"""Structured JSON logging with run ID correlation.

Usage:
    from libs.common.logging import RunContext, configure_logging, get_logger

    configure_logging(service_name="weekly_retrain", log_level="INFO")
    logger = get_logger(__name__)
    with RunContext():
        logger.info("Retrain started")
"""

from libs.common.logging.config import (
    RunIDFilter,
    configure_logging,
    get_logger,
    log_with_context,
)
from libs.common.logging.context import (
    RunContext,
    clear_run_id,
    generate_run_id,
    get_run_id,
    set_run_id,
)
from libs.common.logging.formatter import JSONFormatter

__all__ = [
    "configure_logging",
    "get_logger",
    "log_with_context",
    "RunIDFilter",
    "RunContext",
    "clear_run_id",
    "generate_run_id",
    "get_run_id",
    "set_run_id",
    "JSONFormatter",
]
