"""
Logging setup for the engine.

Two output shapes share one set of context fields:

    JSONFormatter      one JSON object per line, for log shipping (production)
    ReadableFormatter  ``12:04:55 INFO  logger: message (task_id=...) [12ms]`` (dev, tests)

LOG_LEVEL and LOG_FORMAT ("json" | "readable") come from app config; when
LOG_FORMAT is unset, production gets JSON and everything else readable.

Services attach engine context through ``extra=``:

    logger.info("SLA breach claimed", extra={"task_id": task.id, "event_type": "sla_breach"})
"""

import json
import logging
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = (
    "workflow_id",
    "task_id",
    "user_id",
    "event_type",
    "job_name",
    "duration_ms",
    "action",
    "dependency",
)

# Shown inline by the readable formatter; the rest only go to JSON
_INLINE_FIELDS = ("workflow_id", "task_id", "user_id")

_QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "redis")


def record_context(record: logging.LogRecord) -> dict:
    """Engine context fields present on a log record."""
    return {
        name: getattr(record, name)
        for name in CONTEXT_FIELDS
        if getattr(record, name, None) is not None
    }


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
            **record_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        context = record_context(record)
        parts = [
            datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
            f"{record.levelname:<7}",
            f"{record.name}: {record.getMessage()}",
        ]
        inline = " ".join(f"{k}={context[k]}" for k in _INLINE_FIELDS if k in context)
        if inline:
            parts.append(f"({inline})")
        if "duration_ms" in context:
            parts.append(f"[{float(context['duration_ms']):.0f}ms]")
        line = " ".join(parts)
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for this app."""
    production = not app.config.get("DEBUG", False) and not app.config.get("TESTING", False)

    level_name = str(app.config.get("LOG_LEVEL") or ("INFO" if production else "DEBUG")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    fmt = app.config.get("LOG_FORMAT") or ("json" if production else "readable")
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ReadableFormatter())

    root = logging.getLogger()
    # create_app may run several times per process (tests); never stack handlers
    for existing in list(root.handlers):
        if isinstance(existing.formatter, (JSONFormatter, ReadableFormatter)):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    logging.getLogger(__name__).debug("Logging configured level=%s format=%s", level_name, fmt)
