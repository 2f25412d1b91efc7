# ==== STRUCTURED LOGGING WITH LOGURU ==== #

"""
Structured JSON logging for the discount engine.

Every record carries the emitting module, the active trace and span ids
and whatever keyword context the caller passes (owner, invoice_id,
rule_id, ...). Standard library loggers (uvicorn, sqlalchemy, httpx) are
routed through the same loguru sinks.
"""

import logging
import sys
from pathlib import Path
from typing import Any

from loguru import logger
from opentelemetry import trace
from opentelemetry.instrumentation.logging import LoggingInstrumentor


_NOISY_LIBRARIES = ("httpx", "httpcore", "sqlalchemy.engine", "uvicorn.access")


class InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _inject_trace_context(record) -> None:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        record["extra"]["trace_id"] = format(span_context.trace_id, "032x")
        record["extra"]["span_id"] = format(span_context.span_id, "016x")


# ==== INITIALIZATION ==== #


def init_logging(level: str = "INFO", log_to_files: bool = False) -> None:
    """Configure loguru sinks and standard library interception.

    Args:
        level: Minimum level for stdout (DEBUG, INFO, WARNING, ERROR)
        log_to_files: Also write rotated JSON files under ./logs, with
            errors kept in a separate, longer-retained file
    """
    logger.remove()
    logger.configure(patcher=_inject_trace_context)

    logger.add(
        sys.stdout,
        serialize=True,
        level=level.upper(),
        enqueue=True,
        backtrace=True,
        diagnose=False,
    )

    if log_to_files:
        logs_dir = Path("logs")
        logs_dir.mkdir(exist_ok=True)
        file_sink = dict(serialize=True, enqueue=True, compression="gz", diagnose=False)

        logger.add(
            logs_dir / "discount_engine_{time:YYYY-MM-DD}.log",
            level="DEBUG",
            rotation="100 MB",
            retention="30 days",
            **file_sink
        )
        logger.add(
            logs_dir / "discount_engine_errors_{time:YYYY-MM-DD}.log",
            level="ERROR",
            rotation="50 MB",
            retention="90 days",
            **file_sink
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    LoggingInstrumentor().instrument(set_logging_format=False)

    logger.info("Logging initialized", level=level.upper(), files=log_to_files)


# ==== CONTEXTUAL LOGGER ==== #


class ContextualLogger:
    """Module logger whose keyword arguments become structured fields.

    logger.info("Discount application committed", owner=..., rule_id=...)
    """

    def __init__(self, name: str):
        self.name = name
        self._logger = logger.bind(logger_name=name)

    def _log(self, level: str, msg: str, context: dict, exception: bool = False) -> None:
        self._logger.opt(depth=2, exception=exception).bind(**context).log(level, msg)

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._log("DEBUG", msg, kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._log("INFO", msg, kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._log("WARNING", msg, kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._log("ERROR", msg, kwargs)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """Error with the active exception's traceback attached."""
        self._log("ERROR", msg, kwargs, exception=True)


def get_logger(name: str) -> ContextualLogger:
    return ContextualLogger(name)


def log_business_event(event_type: str, owner: str, **context: Any) -> None:
    """Audit line for a business event, e.g. discount_applied.

    Args:
        event_type: Event name, shared with the analytics log
        owner: Owner (account) the event belongs to
        **context: Event payload fields
    """
    logger.bind(
        business_event=True,
        event_type=event_type,
        owner=owner,
        **context
    ).info("Business event: {}", event_type)
