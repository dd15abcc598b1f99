"""
Structured JSON logging configuration.
NEVER logs: request payloads, app config contents.

One JSON object per line. Each record is written by a single handler call
under the handler lock, so lines from concurrent builds never interleave.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from appbuilder.core.request_context import get_build_id, get_request_id

# Optional context fields copied from `extra=` onto the JSON line
CONTEXT_FIELDS = (
    "request_id",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "client_ip",
    "build_id",
    "container_id",
    "state",
    "exit_code",
)


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Task context first; explicit extras below take precedence
        request_id = get_request_id()
        if request_id:
            log_data["request_id"] = request_id
        build_id = get_build_id()
        if build_id:
            log_data["build_id"] = build_id

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.addHandler(handler)

    # We log requests ourselves
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    # Docker SDK transport chatter
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)
