"""Centralized logging configuration.

Log records pass through ``PIIRedactionFilter`` before any handler sees them:
taxpayer SSNs and phone numbers show up in gateway errors and SMS traces and
must not reach stdout or the log aggregator.
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone

from navigator.core.config import settings

SSN_RE = re.compile(r"\b\d{3}-?\d{2}-?(\d{4})\b")
PHONE_RE = re.compile(r"(?<!\d)(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?(\d{4})(?!\d)")

# Attributes copied from `extra=` into JSON output
CONTEXT_FIELDS = ("request_id", "return_id", "queue_name", "tenant_id")


def redact(text: str) -> str:
    text = SSN_RE.sub(r"***-**-\1", text)
    return PHONE_RE.sub(r"***-***-\1", text)


class PIIRedactionFilter(logging.Filter):
    """Masks SSNs and phone numbers, keeping the last four digits."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = redact(self.formatException(record.exc_info))
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value
        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging() -> None:
    """Configure the root logger for the API process and Celery workers."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(PIIRedactionFilter())
    if settings.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        )
    root.addHandler(handler)

    # Gateway clients log request lines at INFO
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(level if settings.app_debug else logging.WARNING)
    logging.getLogger("celery").setLevel(level)
