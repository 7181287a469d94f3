"""Logging configuration for Job-Sync.

Every execution context (the background daemon, a foreground CLI call)
logs through the same ``job_sync`` logger. Records are tagged with the
context name so interleaved output from several contexts sharing a log
file can be told apart.
"""

import logging
import sys
from pathlib import Path

# Logger name for the application
LOGGER_NAME = "job_sync"

# Module loggers are created with logging.getLogger(__name__) under this package
PACKAGE_LOGGER_NAME = "src"

LOG_FORMAT = "%(asctime)s - [%(sync_context)s] %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


class ContextFilter(logging.Filter):
    """Stamp each record with the name of the execution context."""

    def __init__(self, context: str) -> None:
        super().__init__()
        self.context = context

    def filter(self, record: logging.LogRecord) -> bool:
        record.sync_context = self.context
        return True


def _managed_loggers() -> list[logging.Logger]:
    return [
        logging.getLogger(LOGGER_NAME),
        logging.getLogger(PACKAGE_LOGGER_NAME),
    ]


def configure_logging(
    level: str | None = None,
    context: str = "foreground",
    log_file: Path | None = None,
    format_string: str = LOG_FORMAT,
    date_format: str = DATE_FORMAT,
) -> logging.Logger:
    """Configure and return the main application logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to INFO if not specified.
        context: Name of the execution context, included in every line.
        log_file: Optional file to append to in addition to stderr.
        format_string: Format string for log messages.
        date_format: Format string for timestamps.

    Returns:
        The configured root application logger.
    """
    global _configured

    if level is None:
        level = "INFO"
    log_level = getattr(logging, level.upper(), logging.INFO)

    for logger in _managed_loggers():
        logger.setLevel(log_level)

        if _configured:
            for handler in logger.handlers:
                handler.setLevel(log_level)
                for log_filter in handler.filters:
                    if isinstance(log_filter, ContextFilter):
                        log_filter.context = context
            continue

        logger.handlers.clear()
        formatter = logging.Formatter(format_string, datefmt=date_format)

        handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

        for handler in handlers:
            handler.setLevel(log_level)
            handler.setFormatter(formatter)
            handler.addFilter(ContextFilter(context))
            logger.addHandler(handler)

        logger.propagate = False

    _configured = True
    return logging.getLogger(LOGGER_NAME)


def get_logger(name: str) -> logging.Logger:
    """Get a child logger for a specific module.

    Args:
        name: The module name (will be prefixed with 'job_sync.').

    Returns:
        A child logger for the module.
    """
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def reset_logging() -> None:
    """Reset logging configuration (useful for testing)."""
    global _configured

    for logger in _managed_loggers():
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()
        logger.setLevel(logging.NOTSET)
        logger.propagate = True

    _configured = False
