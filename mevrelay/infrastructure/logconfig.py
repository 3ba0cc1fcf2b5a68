"""Logging setup for the relay: level parsing and JSON or text output."""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from collections.abc import Mapping
from datetime import datetime, timezone

from mevrelay.infrastructure.config import LoggingConfig

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOGGER_NAME = "mevrelay"
LEVEL_ENV_VAR = "LOG_LEVEL"

_LEVELS_BY_NAME = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}

_LEVELS_BY_NUMBER = {
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.INFO,
    4: logging.DEBUG,
    5: TRACE,
}


def parse_level(name: str) -> int:
    """Parse a level name (error, warn, info, debug, trace) or number 1-5."""
    text = name.strip()
    if text.isdigit():
        level = _LEVELS_BY_NUMBER.get(int(text))
    else:
        level = _LEVELS_BY_NAME.get(text.lower())
    if level is None:
        raise ValueError(f"Invalid log level '{name}'")
    return level


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "target": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def _text_formatter() -> logging.Formatter:
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    formatter.converter = time.gmtime
    return formatter


class Logging:
    """Configures the package logger from a LoggingConfig."""

    def __init__(
        self, config: LoggingConfig | None = None, environ: Mapping[str, str] | None = None
    ) -> None:
        self.config = config if config is not None else LoggingConfig()
        self._environ = environ
        self._handler: logging.Handler | None = None
        self._logger = logging.getLogger(LOGGER_NAME)

    def _effective_level(self) -> int:
        env = os.environ if self._environ is None else self._environ
        override = env.get(LEVEL_ENV_VAR)
        if override:
            try:
                return parse_level(override)
            except ValueError:
                pass
        try:
            return parse_level(self.config.level)
        except ValueError:
            return logging.INFO

    def _make_handler(self) -> logging.Handler:
        output = self.config.output
        if output == "stdout":
            handler: logging.Handler = logging.StreamHandler(sys.stdout)
        elif output == "stderr":
            handler = logging.StreamHandler(sys.stderr)
        else:
            handler = logging.FileHandler(output, encoding="utf-8")
        handler.setFormatter(_JsonFormatter() if self.config.format == "json" else _text_formatter())
        return handler

    def init(self) -> logging.Logger:
        """Install the handler on the package logger and return that logger."""
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler.close()
        self._handler = self._make_handler()
        self._logger.addHandler(self._handler)
        self._logger.setLevel(self._effective_level())
        self._logger.info("Logging initialized with format: %s", self.config.format)
        return self._logger

    def set_level(self, level: str) -> None:
        """Change the configured level; raises ValueError for an unknown level."""
        parsed = parse_level(level)
        self.config.level = level
        if self._handler is not None:
            self._logger.setLevel(parsed)
        self._logger.info("Log level set to: %s", level)