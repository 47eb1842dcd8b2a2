from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

STRUCTURED_KEYS = (
    "role",
    "service",
    "run_id",
    "worker_id",
    "tubes",
    "tube",
    "job_id",
    "item_id",
    "submission_id",
    "person_id",
    "operation",
    "status",
    "error_code",
    "error",
    "duplicate_of",
    "replayed",
    "attempts",
    "delay_seconds",
    "rows",
    "failed_rows",
    "skipped",
    "file_name",
    "did_work",
    "subscriber",
    "event",
    "notification_type",
    "related_id",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key in STRUCTURED_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging() -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)
