"""
Logging setup and per-request log lines.

Production writes one JSON object per record; development and tests get a
short colored line. ``LOG_LEVEL`` overrides the level.

Workflow code attaches context through ``extra=``, e.g.
``logger.info("step advanced", extra={"budget_id": 1, "item_id": 4, "stage": "cost"})``.
"""

import json
import logging
import os
import sys
import time
import uuid
from datetime import datetime, timezone

from flask import g, request

request_logger = logging.getLogger("budgetflow.request")

# Context attributes copied from ``extra=`` into the JSON record
CONTEXT_KEYS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "user_id",
    "budget_id",
    "item_id",
    "stage",
    "event_type",
    "recipient",
    "job_name",
)

# Shown inline by the readable formatter
_INLINE_KEYS = ("budget_id", "item_id", "stage", "duration_ms")

SLOW_REQUEST_MS = 1000
_QUIET_PATHS = frozenset({"/api/v1/health"})


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update({k: getattr(record, k) for k in CONTEXT_KEYS
                      if getattr(record, k, None) is not None})
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        ctx = " ".join(
            f"{k}={getattr(record, k)}" for k in _INLINE_KEYS
            if getattr(record, k, None) is not None
        )
        line = f"{color}{stamp} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"
        if ctx:
            line += f" [{ctx}]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    JSON in production (not DEBUG, not TESTING), readable otherwise.
    """
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if production else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # third-party loggers are chatty at DEBUG
    for name in ("werkzeug", "sqlalchemy.engine", "redis", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if production else "readable")


def init_request_logging(app):
    """Log one line per API request with caller, status and duration.

    ``X-Request-ID`` is echoed back (generated when absent) so mail and
    audit log lines can be matched to the request that caused them.
    """

    @app.before_request
    def _start():
        g.request_started = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish(response):
        started = getattr(g, "request_started", None)
        if started is None or request.path in _QUIET_PATHS:
            return response
        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        response.headers["X-Request-ID"] = g.request_id

        user = g.get("current_user")
        extra = {
            "request_id": g.request_id,
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "user_id": getattr(user, "id", None),
        }
        if response.status_code >= 500:
            level = logging.ERROR
        elif duration_ms > SLOW_REQUEST_MS:
            level = logging.WARNING
        else:
            level = logging.DEBUG
        request_logger.log(level, "%s %s %d", request.method, request.path,
                           response.status_code, extra=extra)
        return response
