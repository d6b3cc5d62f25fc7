"""
Structured logging configuration.

- Production: one JSON object per line, workflow fields lifted from ``extra=``
- Development: readable single-line format, workflow fields as ``[key=value]`` tags
- Log level: ``LOG_LEVEL`` config / env variable

Services log with ``extra={"tenant_id": ..., "inspection_id": ...}``; the
formatters below are the only place those keys are rendered.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

WORKFLOW_FIELDS = ("tenant_id", "inspection_id", "workflow_id", "event_type", "duration_ms")


def workflow_fields(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in WORKFLOW_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """JSON log formatter for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            **workflow_fields(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Single-line formatter for development; colors only on a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = False):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:<8}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = "".join(f" [{k}={v}]" for k, v in workflow_fields(record).items())
        line = f"{ts} {level} {record.name}: {record.getMessage()}{tags}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install one stderr handler on the root logger.

    JSON outside debug/testing, readable otherwise. Level from ``LOG_LEVEL``
    (default DEBUG in development, INFO elsewhere).
    """
    is_testing = app.config.get("TESTING", False)
    as_json = not app.config.get("DEBUG", False) and not is_testing

    level_name = app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO" if as_json else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if as_json else ReadableFormatter(color=sys.stderr.isatty()))
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # engine SQL echo and migration chatter stay at WARNING
    for noisy in ("sqlalchemy.engine", "alembic", "werkzeug"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if as_json else "readable")
