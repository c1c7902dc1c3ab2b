from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime

CONTEXT_KEYS = (
    "role",
    "service",
    "run_id",
    "task_id",
    "owner_id",
    "status",
    "stage",
    "outcome",
    "error_kind",
    "method",
    "operation",
    "attempt",
    "provider_result_ref",
    "key",
    "repository",
    "provider",
    "storage",
    "restarts_total",
    "relaunched",
    "scanned",
    "failed",
    "cancelled",
    "refunded",
    "materialized",
    "executor_restarted",
)

# Libraries that log every request at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3")


class JsonFormatter(logging.Formatter):
    """One JSON object per record; only known context keys are copied from `extra`."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        payload.update(
            (key, value) for key in CONTEXT_KEYS if (value := getattr(record, key, None)) is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel((level or os.getenv("LOG_LEVEL") or "INFO").upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
