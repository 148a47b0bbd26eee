"""Tests for logging utilities."""

import io
import logging

from keel.utils.logging import ROOT_LOGGER, StructuredLogger, configure_logging, get_logger


def _handler(stream: io.StringIO) -> logging.Handler:
    return logging.StreamHandler(stream)


class TestLogging:
    """Tests for configure_logging and friends."""

    def teardown_method(self):
        logger = logging.getLogger(ROOT_LOGGER)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.propagate = True
        logger.setLevel(logging.NOTSET)

    def test_configure_replaces_previous_handler(self):
        """Test repeated configuration does not stack handlers."""
        configure_logging("INFO", handler=_handler(io.StringIO()))
        logger = configure_logging("DEBUG", handler=_handler(io.StringIO()))

        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG
        assert logger.propagate is False

    def test_component_loggers_are_children(self):
        """Test get_logger names loggers under the package logger."""
        stream = io.StringIO()
        configure_logging("INFO", format_string="%(name)s %(message)s", handler=_handler(stream))

        get_logger("store").info("hello")

        assert stream.getvalue().strip() == "keel.store hello"

    def test_structured_logger_context(self):
        """Test context is appended as key=value pairs."""
        stream = io.StringIO()
        configure_logging("DEBUG", format_string="%(message)s", handler=_handler(stream))

        log = StructuredLogger("repair", source="ideator")
        log.with_context(attempt=2).warning("Repair failed", strategy="cleaned")
        log.info("plain")

        lines = stream.getvalue().strip().splitlines()
        assert lines[0] == "Repair failed | source=ideator attempt=2 strategy=cleaned"
        assert lines[1] == "plain | source=ideator"

    def test_level_filtering(self):
        """Test messages below the configured level are dropped."""
        stream = io.StringIO()
        configure_logging("WARNING", format_string="%(message)s", handler=_handler(stream))

        StructuredLogger("store").info("quiet")
        StructuredLogger("store").error("loud")

        assert stream.getvalue().strip() == "loud"
