"""Logging setup for the CLI."""

import json
import logging
from typing import Optional

import click

LOGGER_NAME = "cargo_loom"

_LEVEL_STYLES = {
    logging.DEBUG: {"fg": "blue", "bold": True},
    logging.INFO: {"fg": "green", "bold": True},
    logging.WARNING: {"fg": "yellow", "bold": True},
    logging.ERROR: {"fg": "red", "bold": True},
    logging.CRITICAL: {"fg": "red", "bold": True},
}


class HumanFormatter(logging.Formatter):
    """cargo-style `warning: message` lines."""

    def __init__(self, color: bool = False):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname.lower()
        if self.color:
            level = click.style(level, **_LEVEL_STYLES.get(record.levelno, {}))
        message = f"{level}: {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "target": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data)


def parse_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"unknown log level: {name}")
    return level


def configure_logging(
    level: int = logging.WARNING,
    message_format: str = "human",
    color: bool = False,
    stream: Optional[object] = None,
) -> logging.Logger:
    """Configure the package logger to write to stderr (or `stream`)."""

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream)
    if message_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(HumanFormatter(color=color))
    handler.setLevel(level)
    logger.addHandler(handler)

    return logger
