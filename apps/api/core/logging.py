"""
Structured logging for the sync service.

JSON lines in production (one object per record, extra_fields merged in),
plain text for local development and tests. Sync payloads are user data:
fields named in REDACTED_FIELDS never reach the log stream.
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict
from core.config import settings

SERVICE_NAME = "practice-sync"

REDACTED_FIELDS = frozenset({"authorization", "token", "data", "payload", "idempotency_key", "secret"})

# Libraries that log every statement or request at INFO.
QUIET_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "urllib3": logging.WARNING,
    "alembic.runtime.migration": logging.INFO,
    "celery": logging.INFO,
}


def _redact(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: ("[redacted]" if k.lower() in REDACTED_FIELDS else v) for k, v in fields.items()}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "environment": settings.ENVIRONMENT,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            log_data.update(_redact(extra_fields))

        return json.dumps(log_data, default=str)


def setup_logging():
    """
    Configure the root logger once per process (API and worker).

    Uses JSON format in production or when LOG_FORMAT=json, text otherwise.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    return root_logger
