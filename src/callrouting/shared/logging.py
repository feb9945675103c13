"""
JSON log lines with request and call context.

Every record carries the request correlation id and, while a call-control
delivery is being handled, the call id and tenant id.
"""

import json
import logging
import os
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from callrouting.config import get_settings

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
call_id_var: ContextVar[str | None] = ContextVar("call_id", default=None)
organization_id_var: ContextVar[int | None] = ContextVar("organization_id", default=None)

# Credentials can show up in extra={...}; never emit their values.
SENSITIVE_FIELDS = frozenset(
    {"authorization", "token", "bearer_token", "secret", "hmac_secret", "signature", "service_token"}
)

_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """Render a record as one JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name, var in (
            ("correlation_id", correlation_id_var),
            ("call_id", call_id_var),
            ("organization_id", organization_id_var),
        ):
            value = var.get()
            if value is not None:
                entry[name] = value

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRIBUTES:
                continue
            if key.lower() in SENSITIVE_FIELDS:
                value = "***"
            if key in entry:
                if entry[key] == value:
                    continue
                key = f"extra_{key}"
            entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


@contextmanager
def call_context(call_id: str | None, organization_id: int | None) -> Iterator[None]:
    """Tag log records emitted inside the block with the call and tenant."""
    call_token = call_id_var.set(call_id)
    org_token = organization_id_var.set(organization_id)
    try:
        yield
    finally:
        organization_id_var.reset(org_token)
        call_id_var.reset(call_token)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def get_logger(name: str) -> logging.Logger:
    """Module logger; falls back to its own JSON handler before setup_logging runs."""
    logger = logging.getLogger(name)
    if not logger.handlers and not logging.getLogger().handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    return logger


def setup_logging() -> None:
    """Install the JSON handler on the root logger."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level.upper())
    root_logger.handlers = [handler]

    # SQLAlchemy stays at WARNING unless SQLALCHEMY_LOG_LEVEL says otherwise
    sqlalchemy_level = os.getenv("SQLALCHEMY_LOG_LEVEL", "").strip().upper() or "WARNING"
    for name in ("sqlalchemy.engine", "sqlalchemy.pool"):
        logging.getLogger(name).setLevel(sqlalchemy_level)

    for name in ("httpx", "httpcore", "python_multipart", "redis"):
        logging.getLogger(name).setLevel(logging.WARNING)
