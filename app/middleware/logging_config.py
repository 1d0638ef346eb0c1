"""
Logging setup for the protocol review service.

Production writes one JSON object per line; development writes a coloured
single line that shows the workflow step (action, from -> to) when the record
carries one. LOG_LEVEL overrides the level.

Services log with ``extra={...}``. Keys listed in _EXTRA_FIELDS end up in the
JSON payload; every record inside a request also gets its ``request_id``.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

_EXTRA_FIELDS = (
    # request
    "method", "path", "status", "duration_ms", "remote_addr", "request_id",
    # workflow
    "application_id", "protocol_number", "committee", "action", "decision",
    "from_status", "to_status", "actor_type", "actor_id",
    # legacy import
    "legacy_action", "applications", "imported",
    "skipped_existing", "skipped_unmappable", "skipped_invalid",
)

_QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "alembic")


class RequestIdFilter(logging.Filter):
    """Stamp the current request id onto records that lack one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None and has_request_context():
            record.request_id = getattr(g, "request_id", None)
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        payload.update(
            (key, getattr(record, key))
            for key in _EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured one-line format for local development."""

    _COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    _RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self._COLORS.get(record.levelname, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{color}{stamp} {record.levelname:<8}{self._RESET} {record.name}: {record.getMessage()}"

        app_id = getattr(record, "application_id", None)
        if app_id is not None:
            line += f" (protocol #{app_id})"
        action = getattr(record, "action", None)
        if action and getattr(record, "to_status", None):
            line += f" [{action}: {getattr(record, 'from_status', '?')} -> {record.to_status}]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"

        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    JSON outside DEBUG/TESTING, readable otherwise. Safe to call once per
    create_app(); existing root handlers are replaced.
    """
    testing = app.config.get("TESTING", False)
    as_json = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if as_json else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if as_json else ReadableFormatter())
    handler.addFilter(RequestIdFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, "json" if as_json else "readable")
