"""
JSON log lines with a per-request correlation id.

    {"timestamp": ..., "level": ..., "correlation_id": ..., "module": ...,
     "message": ..., "provider": "hotmart", "transaction_id": "HP..."}

The correlation id comes from X-Correlation-ID (or is generated) in the
request middleware and follows the request into the pipeline task, because
asyncio tasks copy the current context when they are created.
"""
import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes lifted from `extra=` into the JSON line
EXTRA_FIELDS = (
    "provider",
    "transaction_id",
    "webhook_log_id",
    "channel",
    "event_type",
    "error_code",
)

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """32-char hex id."""
    return uuid.uuid4().hex


def mask_email(email: Optional[str]) -> str:
    """jane.doe@example.com -> ja***@example.com"""
    if not email or "@" not in email:
        return "***"
    local, _, domain = email.partition("@")
    return f"{local[:2]}***@{domain}"


class StructuredJsonFormatter(logging.Formatter):
    """One JSON object per record. Raw emails passed as `email=` are masked."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        for field in EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        email = getattr(record, "email", None)
        if email:
            entry["email"] = mask_email(email)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Route the root logger to stdout as JSON. Existing handlers are dropped."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
