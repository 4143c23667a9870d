from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.config import get_settings


_KNOWN_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "tenant_id",
        "actor_user_id",
        "resource",
        "lead_id",
        "entity_type",
        "entity_id",
        "event_name",
        "kind",
        "outcome",
        "error",
    }
)
_MAX_ERROR_LENGTH = 500
# Request lines are written by RequestLoggingMiddleware.
_QUIET_LOGGERS = ("uvicorn.access",)

_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {key: value for key, value in record.__dict__.items() if key in _KNOWN_FIELDS}
    error = fields.get("error")
    if isinstance(error, str) and len(error) > _MAX_ERROR_LENGTH:
        fields["error"] = error[:_MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; only whitelisted ``extra`` keys are emitted."""

    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        if self.service:
            payload["service"] = self.service

        fields = _extra_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload["fields"] = fields
        return json.dumps(payload, default=str)


class ConsoleLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname:<7} {record.name} {record.getMessage()}"
        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            line = f"{line} correlation_id={correlation_id}"
        fields = _extra_fields(record)
        if fields:
            line = f"{line} " + " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crm_configured", False):
        return

    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    if settings.log_format == "console":
        handler.setFormatter(ConsoleLogFormatter())
    else:
        handler.setFormatter(JsonLogFormatter(service=settings.app_name))

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    root_logger._crm_configured = True  # type: ignore[attr-defined]
