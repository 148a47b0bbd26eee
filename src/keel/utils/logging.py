"""Logging utilities for Keel."""

import logging
import sys
from typing import Any

ROOT_LOGGER = "keel"

_HANDLER_MARKER = "_keel_handler"


def configure_logging(
    level: int | str = logging.INFO,
    format_string: str | None = None,
    handler: logging.Handler | None = None,
) -> logging.Logger:
    """Configure the ``keel`` logger.

    Calling this again replaces the handler installed by the previous call
    instead of stacking a second one.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format_string: Custom format string.
        handler: Custom handler. Defaults to a stdout StreamHandler.

    Returns:
        The configured package logger.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if format_string is None:
        format_string = "[%(asctime)s] %(levelname)s [%(name)s] %(message)s"

    if handler is None:
        handler = logging.StreamHandler(sys.stdout)

    handler.setFormatter(logging.Formatter(format_string))
    setattr(handler, _HANDLER_MARKER, True)

    logger = logging.getLogger(ROOT_LOGGER)
    for existing in list(logger.handlers):
        if getattr(existing, _HANDLER_MARKER, False):
            logger.removeHandler(existing)

    logger.setLevel(level)
    logger.addHandler(handler)

    # Prevent propagation to root logger
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a Keel component.

    Args:
        name: Component name (e.g., "store", "checkpoint").

    Returns:
        Logger named ``keel.<name>``.
    """
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


class StructuredLogger:
    """Logger that appends ``key=value`` context to every message."""

    def __init__(self, name: str, **context: Any):
        """Initialize structured logger.

        Args:
            name: Component name.
            **context: Context included in every message.
        """
        self._name = name
        self._logger = get_logger(name)
        self._context: dict[str, Any] = dict(context)

    def with_context(self, **kwargs: Any) -> "StructuredLogger":
        """Return a logger carrying extra context; self is unchanged."""
        return StructuredLogger(self._name, **{**self._context, **kwargs})

    def _format_message(self, message: str, **kwargs: Any) -> str:
        data = {**self._context, **kwargs}
        if data:
            pairs = [f"{k}={v}" for k, v in data.items()]
            return f"{message} | {' '.join(pairs)}"
        return message

    def debug(self, message: str, **kwargs: Any) -> None:
        self._logger.debug(self._format_message(message, **kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self._logger.info(self._format_message(message, **kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self._logger.warning(self._format_message(message, **kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        self._logger.error(self._format_message(message, **kwargs))
