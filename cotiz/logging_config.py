"""
Logging configuration for Cotiz.

Call setup_logging(app) once from the app factory. Console output is human-readable in
development and JSON lines when LOG_JSON is enabled (production log shipping).
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone

from flask import Flask, g, has_request_context, request

_EXTRA_FIELDS = (
    "request_id",
    "quote_id",
    "response_id",
    "payment_id",
    "delivery_id",
    "client_id",
    "supplier_id",
    "user_id",
    "event",
    "error_code",
    "http_status",
    "path",
    "method",
)


def ensure_request_id() -> str:
    """Return the current request id, creating it from X-Request-Id or a new uuid."""
    rid = getattr(g, "request_id", None)
    if rid:
        return rid
    incoming = (request.headers.get("X-Request-Id") or "").strip()
    rid = incoming[:64] if incoming else uuid.uuid4().hex
    g.request_id = rid
    return rid


class RequestIdFilter(logging.Filter):
    """Attach the request id to records emitted inside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = getattr(g, "request_id", None) if has_request_context() else None
        return True


class JSONFormatter(logging.Formatter):
    """Structured JSON log lines for machine parsing."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        for key in _EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        return json.dumps(entry, default=str, ensure_ascii=False)


class HumanFormatter(logging.Formatter):
    """Readable console format."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(timezone.utc).strftime("%H:%M:%S")
        extras = " ".join(
            f"{key}={getattr(record, key)}"
            for key in _EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        line = f"{ts} [{record.levelname[0]}] {record.name}: {record.getMessage()}"
        if extras:
            line = f"{line} ({extras})"
        if record.exc_info and record.exc_info[0]:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(app: Flask) -> None:
    """Configure the root logger from app config (LOG_LEVEL, LOG_JSON)."""
    level_name = str(app.config.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    # Replace only our own handler so test runners keep their capture handlers.
    for handler in list(root.handlers):
        if getattr(handler, "_cotiz_handler", False):
            root.removeHandler(handler)

    console = logging.StreamHandler()
    console._cotiz_handler = True  # type: ignore[attr-defined]
    console.setFormatter(JSONFormatter() if app.config.get("LOG_JSON") else HumanFormatter())
    console.addFilter(RequestIdFilter())
    root.addHandler(console)

    # Flask's own logger propagates to root; avoid double lines.
    app.logger.handlers.clear()
    app.logger.propagate = True

    for name in ("urllib3", "werkzeug", "pypdf"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("cotiz").debug("Logging initialized", extra={"event": "logging_ready"})
