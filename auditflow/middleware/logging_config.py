"""
Structured logging configuration.

- Development: coloured single-line format with the acceptance context
- Production: one JSON object per line for the log aggregator
- Level: LOG_LEVEL env variable, then the LOG_LEVEL config key

Services pass workflow context through ``extra=`` (engagement_id, stage,
...). RequestContextFilter fills request_id / tenant_id / user_id from
``flask.g`` for records emitted inside a request, so service code does not
have to repeat them.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Request attributes set by timing.py
REQUEST_KEYS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")

# Acceptance workflow context passed via extra=
CONTEXT_KEYS = ("tenant_id", "user_id", "engagement_id", "stage", "event_type")

_QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "alembic", "flask_limiter")


class RequestContextFilter(logging.Filter):
    """Stamp records with the acting firm / user of the current request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            for key in ("request_id", "tenant_id", "user_id"):
                if getattr(record, key, None) is None:
                    setattr(record, key, g.get(key))
        return True


def _collect(record, keys) -> dict:
    return {k: getattr(record, k) for k in keys if getattr(record, k, None) is not None}


class JSONFormatter(logging.Formatter):
    """Aggregator-friendly JSON lines. Workflow context is nested under "ctx"."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "src": f"{record.module}:{record.lineno}",
        }
        entry.update(_collect(record, REQUEST_KEYS))
        ctx = _collect(record, CONTEXT_KEYS)
        if ctx:
            entry["ctx"] = ctx
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured development output: ``12:01:33 INFO  logger: msg [eng=4 stage=...]``."""

    LEVEL_COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    _SHORT = {"tenant_id": "firm", "user_id": "user", "engagement_id": "eng", "stage": "stage", "event_type": "event"}

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelname, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{colour}{clock} {record.levelname:<7}{self.RESET} {record.name}: {record.getMessage()}"

        ctx = _collect(record, ("engagement_id", "stage", "event_type"))
        if ctx:
            line += " [" + " ".join(f"{self._SHORT[k]}={v}" for k, v in ctx.items()) + "]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for ``app``."""
    testing = app.config.get("TESTING", False)
    json_output = not app.config.get("DEBUG", False) and not testing

    level_name = (os.getenv("LOG_LEVEL") or app.config.get("LOG_LEVEL") or "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_output else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    # Replacing handlers keeps repeated create_app() calls from duplicating output
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging configured (level=%s, json=%s)", level_name, json_output)
