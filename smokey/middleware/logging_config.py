"""
Logging setup for the engine.

Two renderings of the same records:
  - JSONLineFormatter   one object per line, for the log shipper (production)
  - ConsoleFormatter    short colored lines for a developer terminal

``OperatorContextFilter`` copies the request id and operator bound by the
auth middleware onto every record logged during a request, so service
modules can keep calling ``logger.info(...)`` without passing context.

LOG_LEVEL overrides the default level (DEBUG outside production).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Record attributes promoted into JSON output when set
CONTEXT_FIELDS = (
    "request_id",
    "operator_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "client_id",
    "plan_id",
    "task_number",
)

QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "flask_limiter")


class OperatorContextFilter(logging.Filter):
    """Attach ``request_id`` / ``operator_id`` from ``flask.g`` when inside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = getattr(g, "request_id", None)
            if getattr(record, "operator_id", None) is None:
                record.operator_id = getattr(g, "operator_id", None)
        return True


class JSONLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        doc = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        doc.update({k: getattr(record, k) for k in CONTEXT_FIELDS
                    if getattr(record, k, None) is not None})
        if record.exc_info and record.exc_info[0] is not None:
            doc["exc"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    _LEVEL_COLOR = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    _RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        color = self._LEVEL_COLOR.get(record.levelno, "")
        tail = []
        if getattr(record, "duration_ms", None) is not None:
            tail.append(f"{record.duration_ms:.0f}ms")
        if getattr(record, "operator_id", None):
            tail.append(f"op={record.operator_id}")
        if getattr(record, "request_id", None):
            tail.append(f"req={record.request_id}")
        line = f"{stamp} {color}{record.levelname[:4]}{self._RESET} {record.name} | {record.getMessage()}"
        if tail:
            line += "  [" + " ".join(tail) + "]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger for ``app``'s environment."""
    testing = bool(app.config.get("TESTING"))
    production = not app.config.get("DEBUG") and not testing

    level_name = os.getenv("LOG_LEVEL") or ("INFO" if production else "DEBUG")
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONLineFormatter() if production else ConsoleFormatter())
    handler.addFilter(OperatorContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app may run more than once per process (tests, CLI)
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging ready (level=%s, %s output)",
                        logging.getLevelName(level), "json" if production else "console")
