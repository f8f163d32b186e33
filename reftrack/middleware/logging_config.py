"""
Logging setup for the reference engine.

Every record passes through ``RequestContextFilter`` so that lines written
while serving a request carry the request id and the acting user without each
call site repeating them. Services add routing context (``scope``,
``reference_id``, ``event_type`` ...) through ``extra={...}``.

LOG_FORMAT selects ``json`` (default outside DEBUG) or ``text``.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from flask import g, has_app_context

CONTEXT_FIELDS = (
    "request_id",
    "actor_id",
    "scope",
    "reference_id",
    "identity_id",
    "event_type",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

_HANDLER_NAME = "reftrack"


class RequestContextFilter(logging.Filter):
    """Fill ``request_id`` / ``actor_id`` from ``flask.g`` unless already given."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_app_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = g.get("request_id")
            if getattr(record, "actor_id", None) is None:
                actor = g.get("actor")
                record.actor_id = actor.id if actor is not None else None
        return True


def _context(record: logging.LogRecord) -> dict:
    ctx = {}
    for key in CONTEXT_FIELDS:
        val = getattr(record, key, None)
        if val is not None and val != "":
            ctx[key] = val
    return ctx


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """``12:00:01 INFO reftrack.x: Moved LREF-... [scope=local ref=4 actor=2]``"""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        ctx = _context(record)
        tags = " ".join(f"{k}={ctx[k]}" for k in ("scope", "reference_id", "actor_id", "request_id") if k in ctx)
        line = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}"
        if tags:
            line += f" [{tags}]"
        if "duration_ms" in ctx:
            line += f" ({ctx['duration_ms']:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install the reftrack stderr handler on the root logger.

    Only the handler installed here is replaced on a repeated call, so
    handlers added by the host (or by pytest's ``caplog``) survive.
    """
    is_testing = app.config.get("TESTING", False)
    debug = app.config.get("DEBUG", False)

    level_name = (app.config.get("LOG_LEVEL") or ("DEBUG" if debug or is_testing else "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = (app.config.get("LOG_FORMAT") or ("text" if debug or is_testing else "json")).lower()

    root = logging.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "flask_limiter"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
