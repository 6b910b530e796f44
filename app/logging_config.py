"""
Structured logging configuration for the Gemini Document Transcriber.

Log records are emitted as JSON with pipeline context (job, unit, model,
attempt, upload offset) attached through ``log_with_context``.
"""

import logging
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger


SERVICE_NAME = "gemini-doc-transcriber"

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "google_genai", "pypdf")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp, level, origin and service fields."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)

        log_record['timestamp'] = self.formatTime(record, self.datefmt)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['service'] = SERVICE_NAME
        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    use_json: bool = True
) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path to write logs to (in addition to stdout)
        use_json: Whether to use JSON formatting (default: True)
    """
    level = getattr(logging, log_level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    if use_json:
        formatter = CustomJsonFormatter(
            '%(timestamp)s %(level)s %(logger)s %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Client libraries stay at WARNING or above
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    root_logger.info(
        "Logging configured",
        extra={
            "log_level": log_level,
            "use_json": use_json,
            "log_file": log_file
        }
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    job_id: Optional[str] = None,
    unit: Optional[str] = None,
    model: Optional[str] = None,
    attempt: Optional[int] = None,
    error: Optional[BaseException] = None,
    **kwargs
) -> None:
    """
    Log a message with structured pipeline context.

    Args:
        logger: Logger instance to use
        level: Log level (debug, info, warning, error, critical)
        message: Log message
        job_id: Optional job identifier
        unit: Optional upload unit name
        model: Optional model identifier
        attempt: Optional 1-based attempt number
        error: Optional exception instance; its type and message are added
            and the traceback is attached for error/critical levels
        **kwargs: Additional context fields

    Example:
        >>> log_with_context(
        ...     logger,
        ...     "warning",
        ...     "Transient error, backing off",
        ...     unit="scan_part1.pdf",
        ...     model="gemini-2.5-flash",
        ...     attempt=2,
        ...     delay_seconds=3.0
        ... )
    """
    context = {}

    if job_id:
        context['job_id'] = job_id
    if unit:
        context['unit'] = unit
    if model:
        context['model'] = model
    if attempt is not None:
        context['attempt'] = attempt
    if error is not None:
        context['error_type'] = type(error).__name__
        context['error_message'] = str(error)

    context.update(kwargs)

    level = level.lower()
    log_method = getattr(logger, level)
    if error is not None and level in ("error", "critical"):
        log_method(message, extra=context, exc_info=error)
    else:
        log_method(message, extra=context)
