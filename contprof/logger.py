"""Structured loggers writing logfmt or JSON lines to standard error."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

LOG_FORMAT_LOGFMT = "logfmt"
LOG_FORMAT_JSON = "json"

_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}


def _level_name(levelno: int) -> str:
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warn"
    if levelno >= logging.INFO:
        return "info"
    return "debug"


class _KeyValueFormatter(logging.Formatter):
    def __init__(self, debug_name: str = "") -> None:
        super().__init__()
        self.debug_name = debug_name

    def fields(self, record: logging.LogRecord) -> list[tuple[str, Any]]:
        """Return the record's key/value pairs in output order."""
        ts = datetime.fromtimestamp(record.created, timezone.utc)
        pairs: list[tuple[str, Any]] = [("level", _level_name(record.levelno))]
        if self.debug_name:
            pairs.append(("name", self.debug_name))
        pairs.append(("ts", ts.isoformat(timespec="microseconds").replace("+00:00", "Z")))
        pairs.append(("caller", f"{record.filename}:{record.lineno}"))
        pairs.append(("msg", record.getMessage()))
        pairs.extend((key, value) for key, value in vars(record).items() if key not in _RESERVED)
        if record.exc_info:
            pairs.append(("exc", self.formatException(record.exc_info)))
        return pairs


def _logfmt_key(key: str) -> str:
    cleaned = "".join("_" if c <= " " or c in '="' else c for c in str(key))
    return cleaned or "_"


def _logfmt_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    if any(c <= " " or c in '="' or c == "\x7f" for c in text):
        return json.dumps(text, ensure_ascii=False)
    return text


class LogfmtFormatter(_KeyValueFormatter):
    """Formats records as logfmt lines of key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        return " ".join(
            f"{_logfmt_key(key)}={_logfmt_value(value)}" for key, value in self.fields(record)
        )


class JsonFormatter(_KeyValueFormatter):
    """Formats records as JSON objects with sorted keys."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(dict(self.fields(record)), sort_keys=True, default=str)


def new_logger(log_level: str, log_format: str, debug_name: str) -> logging.Logger:
    """Return a logger at the given level writing the given format to standard error.

    Raises ValueError if the level is not error, warn, info or debug.
    """
    try:
        level = _LEVELS[log_level]
    except KeyError:
        raise ValueError("unexpected log level") from None

    formatter: logging.Formatter
    if log_format == LOG_FORMAT_JSON:
        formatter = JsonFormatter(debug_name)
    else:
        formatter = LogfmtFormatter(debug_name)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    logger = logging.Logger(debug_name or "contprof", level)
    logger.addHandler(handler)
    logger.propagate = False
    return logger