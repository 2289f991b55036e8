"""Logging setup.

Text lines in dev, JSON lines when LOG_FORMAT=json. Every record carries the
request ID and, inside a webhook, the provider event it belongs to, so one
delivery's ledger writes can be pulled out of the stream.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from config.settings import settings
from payledger.middleware.request_id import request_id_var, webhook_event_var

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s:%(context)s %(message)s"


class ContextFilter(logging.Filter):
    """Copy request ID and webhook event onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.webhook_event = webhook_event_var.get()
        parts = [p for p in (record.request_id[:8], record.webhook_event) if p]
        record.context = f" [{' '.join(parts)}]" if parts else ""
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("request_id", "webhook_event"):
            value = getattr(record, key, "")
            if value:
                log[key] = value
        if record.exc_info and record.exc_info[1]:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, default=str)


def setup_logging():
    """Configure the root logger from LOG_FORMAT / LOG_LEVEL."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    if settings.LOG_FORMAT == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%H:%M:%S"))
    root.addHandler(handler)

    # Quiet noisy libraries
    for name in ("uvicorn.access", "sqlalchemy.engine", "httpx", "apscheduler"):
        logging.getLogger(name).setLevel(logging.WARNING)
