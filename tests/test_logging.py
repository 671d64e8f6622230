"""Tests for refinery.logging (RefineryLogging from LoggingConfig)."""

import logging
import sys

import pytest

from refinery.config import LoggingConfig
from refinery.logging import DEFAULT_FORMAT, DEFAULT_LEVEL, LEVELS, NOISY_LOGGERS, RefineryLogging, _resolve_level


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.root
    handlers, level = list(root.handlers), root.level
    noisy = {name: logging.getLogger(name).level for name in NOISY_LOGGERS}
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, saved in noisy.items():
        logging.getLogger(name).setLevel(saved)


class TestResolveLevel:
    """_resolve_level maps names to logging constants."""

    @pytest.mark.parametrize("name", ["DEBUG", "info", "  Warning ", "error"])
    def test_known(self, name: str) -> None:
        """Known names resolve regardless of case and surrounding whitespace."""
        assert _resolve_level(name) == LEVELS[name.strip().upper()]

    @pytest.mark.parametrize("name", ["TRACE", "CRITICAL", ""])
    def test_unknown_is_info(self, name: str) -> None:
        """Unsupported names fall back to INFO."""
        assert _resolve_level(name) == logging.INFO

    def test_default_level(self) -> None:
        """DEFAULT_LEVEL is INFO and is a supported level."""
        assert DEFAULT_LEVEL == "INFO"
        assert DEFAULT_LEVEL in LEVELS


class TestRefineryLogging:
    """setup() configures the root logger."""

    def test_level_applied(self) -> None:
        """Root level follows config.level."""
        RefineryLogging(LoggingConfig(level="DEBUG", format="%(message)s")).setup()
        assert logging.root.level == logging.DEBUG

    def test_format_applied(self) -> None:
        """Root handler uses config.format."""
        RefineryLogging(LoggingConfig(level="INFO", format="%(name)s | %(message)s")).setup()
        assert logging.root.handlers[0].formatter._fmt == "%(name)s | %(message)s"

    def test_empty_format_uses_default(self) -> None:
        """Empty format falls back to DEFAULT_FORMAT."""
        RefineryLogging(LoggingConfig(level="INFO", format="")).setup()
        assert logging.root.handlers[0].formatter._fmt == DEFAULT_FORMAT

    def test_handler_writes_to_stderr(self) -> None:
        """The root handler streams to stderr, keeping stdout for command output."""
        RefineryLogging(LoggingConfig(level="INFO")).setup()
        assert logging.root.handlers[0].stream is sys.stderr

    def test_http_loggers_quieted(self) -> None:
        """urllib3 and requests log at WARNING unless DEBUG is configured."""
        RefineryLogging(LoggingConfig(level="INFO")).setup()
        assert logging.getLogger("urllib3").level == logging.WARNING
        assert not logging.getLogger("urllib3").isEnabledFor(logging.INFO)
        RefineryLogging(LoggingConfig(level="DEBUG")).setup()
        assert logging.getLogger("urllib3").level == logging.DEBUG

    def test_error_level_not_lowered(self) -> None:
        """A stricter root level also applies to the HTTP loggers."""
        RefineryLogging(LoggingConfig(level="ERROR")).setup()
        assert logging.getLogger("requests").level == logging.ERROR
