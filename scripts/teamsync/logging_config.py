"""Structured JSON logging configuration."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from scripts.teamsync.exceptions import DirectoryAPIError

# record context attached via extra= by the reconciler, extractor and scheduler
_RECORD_KEYS = ("team", "group_id", "user", "drift", "mode")
_JOB_KEYS = (
    "batch", "job_state", "records", "completed", "total",
    "failed_jobs", "skipped_teams", "elapsed_s",
)


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line.

    Directory API failures logged with ``exc_info`` also carry the HTTP
    status and endpoint as top-level fields so they can be filtered on.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            log_entry["exception"] = self.formatException(record.exc_info)
            if isinstance(exc, DirectoryAPIError):
                log_entry["status_code"] = exc.status_code
                log_entry["endpoint"] = exc.endpoint
        for key in _RECORD_KEYS + _JOB_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = list(val) if isinstance(val, (tuple, set)) else val
        # enums (job state, role) render as their values
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "INFO") -> None:
    """Set up the teamsync logger with JSON formatter to stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger("teamsync")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(handler)
    root.propagate = False
