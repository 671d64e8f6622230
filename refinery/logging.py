"""Logging setup for the refinery CLI and loop.

Levels (inclusive): ERROR, WARNING, INFO, DEBUG. Configure via config.yaml
(logging.level, logging.format) or env (LOGGING_LEVEL, LOGGING_FORMAT).

Records always go to stderr: stdout carries command output, which must
stay parseable under ``--json``.
"""

import logging
import sys

from refinery.config import LoggingConfig

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

DEFAULT_LEVEL = "INFO"
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# HTTP client loggers used by the webhook notifier; per-request INFO/DEBUG lines only at DEBUG
NOISY_LOGGERS = ("urllib3", "requests")


def _resolve_level(level: str) -> int:
    """Map level name to logging constant. Unknown names give INFO."""
    return LEVELS.get(level.upper().strip(), logging.INFO)


class RefineryLogging:
    """Configures the root logger from LoggingConfig (YAML + env LOGGING_*)."""

    def __init__(self, config: LoggingConfig) -> None:
        self._level = _resolve_level(config.level)
        self._format = config.format or DEFAULT_FORMAT

    def setup(self) -> None:
        """Install one stderr handler on the root logger and quiet HTTP client loggers."""
        logging.basicConfig(
            level=self._level,
            format=self._format,
            stream=sys.stderr,
            force=True,
        )
        quiet = self._level if self._level == logging.DEBUG else max(self._level, logging.WARNING)
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(quiet)
