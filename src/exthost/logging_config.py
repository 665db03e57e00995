"""Structured logging configuration for exthost.

Provides two log formats:
- **dev** (default): human-readable, colourless, with timestamp/level/module.
- **json**: machine-parseable JSON lines for production / log aggregation.

Usage (at application entry point)::

    from exthost.logging_config import setup_logging
    setup_logging()          # dev format
    setup_logging("json")    # JSON format
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line.

    Fields: timestamp, level, logger, message, plus any *extra* keys
    attached to the record.
    """

    _BUILTIN_ATTRS = frozenset({
        "args", "created", "exc_info", "exc_text", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs", "message", "msg",
        "name", "pathname", "process", "processName", "relativeCreated",
        "stack_info", "thread", "threadName", "taskName",
    })

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in self._BUILTIN_ATTRS and not key.startswith("_"):
                log_entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


DEV_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DEV_DATEFMT = "%H:%M:%S"


def _resolve_level(level: int | str | None) -> int:
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = getattr(logging, level.upper(), None)
    if not isinstance(resolved, int):
        print(f"WARNING: Invalid LOG_LEVEL '{level}', falling back to INFO", file=sys.stderr)
        return logging.INFO
    return resolved


def setup_logging(fmt: str | None = None, level: int | str | None = None) -> None:
    """Configure the root logger.

    Parameters
    ----------
    fmt:
        ``"json"`` or ``"dev"`` (default).  Falls back to ``LOG_FORMAT``.
    level:
        Level name or number.  Falls back to ``LOG_LEVEL``, then ``INFO``.
    """
    fmt = fmt or os.environ.get("LOG_FORMAT", "dev")

    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEV_FORMAT, datefmt=DEV_DATEFMT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_resolve_level(level))

    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
