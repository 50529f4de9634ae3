"""
Structured logging configuration.

- Production: one JSON object per line on stderr
- Development / testing: short coloured lines with the signing context
- Log level: LOG_LEVEL env variable

Every record passes ``RequestIdFilter`` first, so lines logged from
services carry the same request id as the access line.  Signing tokens
are never passed to a logger; the timing middleware logs paths only.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# ``extra={...}`` keys carried into structured output, in output order
CONTEXT_KEYS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "document_id",
    "source_document_id",
    "recipient_id",
    "action",
    "version",
    "label",
    "sequence",
    "purged",
    "mode",
)

# Short tags used by the readable formatter
_READABLE_TAGS = (
    ("document_id", "doc"),
    ("recipient_id", "rcpt"),
    ("version", "v"),
    ("request_id", "req"),
)


class RequestIdFilter(logging.Filter):
    """Attach ``g.request_id`` when the record has none.  Never drops a record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None and has_request_context():
            record.request_id = getattr(g, "request_id", None)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        entry.update({
            key: getattr(record, key)
            for key in CONTEXT_KEYS
            if getattr(record, key, None) is not None
        })
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line output for a terminal."""

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
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = " ".join(
            f"{tag}={getattr(record, key)}"
            for key, tag in _READABLE_TAGS
            if getattr(record, key, None) is not None
        )
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"
        if tags:
            line += f"  [{tags}]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install one stderr handler on the root logger.

    JSON when the app is neither in DEBUG nor TESTING, readable otherwise.
    LOG_LEVEL overrides the default (INFO in production, DEBUG elsewhere).
    """
    testing = app.config.get("TESTING", False)
    structured = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if structured else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter())
    handler.addFilter(RequestIdFilter())
    handler.setLevel(level)

    # create_app may run several times per process (tests)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("werkzeug", "sqlalchemy.engine", "flask_limiter"):
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if structured else "readable")
