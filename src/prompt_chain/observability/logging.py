"""Structured JSON logging with pipeline trace context."""
import logging
import sys
from typing import Any

from pythonjsonlogger import jsonlogger

from prompt_chain.config import get_settings

TRACE_FIELDS = ("run_id", "pipeline_name", "step_name", "attempt")


class TraceContextFilter(logging.Filter):
    """Add trace context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add default trace context fields if not present."""
        for field_name in TRACE_FIELDS:
            if not hasattr(record, field_name):
                setattr(record, field_name, None)
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with standardized field names."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Add custom fields to the log record."""
        super().add_fields(log_record, record, message_dict)

        if "timestamp" not in log_record:
            log_record["timestamp"] = self.formatTime(record, self.datefmt)

        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        # Drop empty trace context so lines stay short
        for field_name in TRACE_FIELDS:
            if log_record.get(field_name) is None:
                log_record.pop(field_name, None)


def setup_logging(level: str | int | None = None, json_format: bool | None = None) -> None:
    """
    Configure logging for the application.

    Args:
        level: Overrides the configured log level
        json_format: Overrides the configured JSON/plain-text choice
    """
    settings = get_settings()
    if json_format is None:
        json_format = settings.log_json

    # stderr keeps stdout free for command output
    handler = logging.StreamHandler(sys.stderr)

    if json_format:
        formatter: logging.Formatter = CustomJsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        )
    handler.setFormatter(formatter)
    handler.addFilter(TraceContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level if level is not None else settings.log_level)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges per-call extra into the adapter context."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str) -> logging.LoggerAdapter:
    """
    Get a logger with trace context support.

    Args:
        name: Logger name (typically __name__)

    Returns:
        LoggerAdapter that can accept trace context in extra dict
    """
    logger = logging.getLogger(name)
    return ContextLoggerAdapter(logger, extra={})


def with_trace_context(
    logger: logging.LoggerAdapter,
    run_id: str | None = None,
    pipeline_name: str | None = None,
    step_name: str | None = None,
    attempt: int | None = None,
    **kwargs: Any,
) -> dict[str, Any]:
    """
    Create an extra dict with trace context for logging.

    Args:
        logger: Logger adapter
        run_id: Pipeline run ID
        pipeline_name: Pipeline name
        step_name: Step name
        attempt: Attempt number within a step
        **kwargs: Additional context fields

    Returns:
        Dict to pass as extra parameter to logger methods
    """
    extra = kwargs.copy()
    if run_id:
        extra["run_id"] = run_id
    if pipeline_name:
        extra["pipeline_name"] = pipeline_name
    if step_name:
        extra["step_name"] = step_name
    if attempt is not None:
        extra["attempt"] = attempt
    return extra
