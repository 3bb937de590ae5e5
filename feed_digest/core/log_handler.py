"""
This module provides the logging setup shared by every component.

It includes:
- 'KeyValueFormatter': A 'logging.Formatter' subclass that appends the
  operation name and its key=value context to each line.
- 'configure_logging': Attaches stdout (and optionally file) handlers to the
  root logger.
- 'log_operation': Emits a record tagged with an operation name and context.
"""

import logging
import sys
from typing import Any, Optional

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class KeyValueFormatter(logging.Formatter):
    """
    Render records as one line of text followed by ``key=value`` pairs.

    Records produced by 'log_operation' carry an ``operation`` attribute and a
    ``context`` mapping; plain records are formatted unchanged.
    """

    def __init__(self, fmt: str = DEFAULT_FORMAT, datefmt: Optional[str] = None):
        super().__init__(fmt=fmt, datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)

        pairs = []
        operation = getattr(record, "operation", None)
        if operation:
            pairs.append(f"operation={operation}")
        context = getattr(record, "context", None) or {}
        for key, value in context.items():
            pairs.append(f"{key}={_quote(value)}")

        if not pairs:
            return line
        head, sep, tail = line.partition("\n")
        return f"{head} {' '.join(pairs)}{sep}{tail}"


def _quote(value: Any) -> str:
    text = str(value)
    if not text or any(ch.isspace() for ch in text):
        return f'"{text}"'
    return text


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configure the root logger with the key=value formatter.

    Args:
        level: Name of the minimum level, e.g. ``INFO`` or ``DEBUG``.
        log_file: Optional path of a file receiving the same lines.
    """
    formatter = KeyValueFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    for handler in handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())


def log_operation(
    logger: logging.Logger,
    level: int,
    operation: str,
    message: str,
    *args: Any,
    exc_info: Any = None,
    **context: Any,
) -> None:
    """
    Log a message tagged with an operation name and key=value context.

    Args:
        logger: Logger of the calling module.
        level: Numeric logging level.
        operation: Operation name, e.g. ``feed_fetch``.
        message: %-style message; ``args`` fill it lazily.
        exc_info: Forwarded to 'logging.Logger.log'.
        **context: Details rendered as ``key=value`` pairs.
    """
    logger.log(
        level,
        message,
        *args,
        exc_info=exc_info,
        extra={"operation": operation, "context": context},
    )
