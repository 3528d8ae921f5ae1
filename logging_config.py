# logging_config.py

import logging
import structlog
import sys
from contextlib import contextmanager
from typing import Any, Dict
from flask import has_request_context, request, g


def add_request_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add Flask request context to log entries"""
    if has_request_context():
        event_dict["request_id"] = getattr(g, 'request_id', None)
        event_dict["method"] = request.method
        event_dict["path"] = request.path
    return event_dict


def setup_logging(app_name: str = "flowstack", log_level: str = "INFO") -> None:
    """
    Configure structured logging for production use

    Args:
        app_name: Application name for log identification
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_request_context,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Configure standard logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    logging.getLogger(app_name).setLevel(level)

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.BoundLogger:
    """
    Get a structured logger instance

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog instance
    """
    return structlog.get_logger(name or __name__)


@contextmanager
def log_context(**values):
    """Bind values onto every log line emitted inside the block"""
    with structlog.contextvars.bound_contextvars(**{k: v for k, v in values.items() if v is not None}):
        yield


class PerformanceLogger:
    """Performance logger for calls to external providers"""

    def __init__(self):
        self.logger = get_logger("performance")

    def log_api_call(self, service: str, endpoint: str, duration_ms: float, status_code: int = None):
        """Log external API call performance"""
        self.logger.info(
            "External API call",
            service=service,
            endpoint=endpoint,
            duration_ms=round(duration_ms, 2),
            status_code=status_code,
            event_type="api_call"
        )


performance_logger = PerformanceLogger()
