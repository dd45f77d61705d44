"""JSON logging for WABot API.

One JSON object per line on stdout. Structured fields go through
``extra={"context": {...}}``; per-tenant loggers carry the ``user_id``
in every record.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

SERVICE_NAME = "wabot-api"
LOGGER_PREFIX = "wabot"

# Chatty third-party loggers kept at WARNING
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine", "multipart")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            entry["context"] = context

        if record.levelno >= logging.WARNING:
            entry["location"] = f"{record.module}:{record.lineno}"

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", stream: Optional[TextIO] = None) -> None:
    """Replace root handlers with a single JSON handler."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Merges fixed fields with a per-call ``context=`` keyword."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        merged = {**(self.extra or {}), **(context or {})}
        if merged:
            kwargs["extra"] = {**kwargs.get("extra", {}), "context": merged}
        return msg, kwargs


def get_session_logger(user_id: Any) -> LoggerAdapter:
    """Logger for one tenant's WhatsApp session."""
    return LoggerAdapter(get_logger("whatsapp"), {"user_id": str(user_id)})
