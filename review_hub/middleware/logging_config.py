"""
Logging setup for the app and the sync/dispatch workers.

LOG_FORMAT=json emits one JSON object per line for log aggregation;
anything else gives a compact readable line.  LOG_LEVEL comes from the
config class (DEBUG in development, INFO in production).

Services attach context with ``extra=`` (project_id, link_id, sync_module,
record_id, run_id, actor, duration_ms).  ``sync_module`` is used because
``module`` is already a LogRecord attribute.
"""

import json
import logging
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = (
    "project_id",
    "link_id",
    "sync_module",
    "run_id",
    "record_id",
    "actor",
    "duration_ms",
)


def _context(record: logging.LogRecord) -> dict:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ContextFormatter(logging.Formatter):
    """``12:00:01 INFO  review_hub.services.sync_service: msg  project_id=3 sync_module=request``"""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{ts} {record.levelname:<7} {record.name}: {record.getMessage()}"
        ctx = _context(record)
        if ctx:
            line += "  " + " ".join(f"{k}={v}" for k, v in ctx.items())
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    level_name = (app.config.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    use_json = str(app.config.get("LOG_FORMAT", "text")).lower() == "json"

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if use_json else ContextFormatter())

    root = logging.getLogger()
    # create_app runs more than once under pytest
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    app.logger.debug("Logging configured level=%s format=%s", level_name, "json" if use_json else "text")
