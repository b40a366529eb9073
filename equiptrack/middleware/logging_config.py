"""
Logging setup for the Flask app.

Services log with ``extra={...}`` carrying the personnel, clearance
request, equipment and record ids they touched plus an ``event_type``.
Both formatters surface those fields: the JSON formatter as top-level
keys, the readable one as a short ``[p=7 cr=3 eq=11]`` tag.

LOG_FORMAT picks the formatter ("json" or "readable"); left unset it is
JSON unless the app runs with DEBUG or TESTING.  LOG_LEVEL overrides the
level (INFO for JSON output, DEBUG otherwise).
"""

import json
import logging
import sys
from datetime import datetime, timezone

REQUEST_KEYS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")

DOMAIN_KEYS = (
    "personnel_id",
    "clearance_request_id",
    "equipment_id",
    "inspection_id",
    "record_ids",
    "event_type",
)

EXTRA_KEYS = REQUEST_KEYS + DOMAIN_KEYS

_TAGS = (("personnel_id", "p"), ("clearance_request_id", "cr"), ("equipment_id", "eq"),
         ("inspection_id", "insp"), ("record_ids", "rec"))


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        for key in EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def context_tag(record: logging.LogRecord) -> str:
        parts = []
        for key, short in _TAGS:
            value = getattr(record, key, None)
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                value = ",".join(str(v) for v in value)
            parts.append(f"{short}={value}")
        return f" [{' '.join(parts)}]" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        event = getattr(record, "event_type", None)
        line = (
            f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: "
            f"{record.getMessage()}{self.context_tag(record)}"
        )
        if event:
            line += f" <{event}>"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for *app*."""
    is_testing = app.config.get("TESTING", False)
    fmt = (app.config.get("LOG_FORMAT") or "").lower()
    if fmt not in ("json", "readable"):
        fmt = "readable" if app.config.get("DEBUG") or is_testing else "json"

    level_name = (app.config.get("LOG_LEVEL") or ("INFO" if fmt == "json" else "DEBUG")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app runs once per test
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("urllib3", "werkzeug", "sqlalchemy.engine", "redis"):
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
