"""Structured JSON logging utilities.

Every record is emitted as a single JSON object so that log aggregation can
follow one payment reference across the verify path, the webhook path and
the reaper:
- timestamp, level, message, module, func, line
- request_id, payment_reference, organization_id (from context variables)
- trace_id, span_id (when OpenTelemetry log correlation is enabled)
- any ``extra={...}`` fields, passed through the sanitizer
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from payrecon_api.context import (
    organization_id_var,
    payment_reference_var,
    request_id_var,
)
from payrecon_api.utils.sanitize import sanitize_exc, sanitize_field, sanitize_str

# LogRecord attributes that are never copied as extra fields
_RESERVED_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "trace_id",
    "span_id",
    "otelTraceID",
    "otelSpanID",
    "otelServiceName",
    "otelTraceSampled",
})

_CONTEXT_FIELDS = (
    ("request_id", request_id_var),
    ("payment_reference", payment_reference_var),
    ("organization_id", organization_id_var),
)


class JSONFormatter(logging.Formatter):
    """JSON log formatter with request/payment context.

    Context fields are only present when the matching context variable is
    set, so background loops produce records without empty identifiers.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": sanitize_str(record.getMessage()),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
            "logger": record.name,
        }

        for field, var in _CONTEXT_FIELDS:
            value = var.get()
            if value:
                log_data[field] = value

        # LoggingInstrumentor injects otelTraceID/otelSpanID; "0" means no active span
        trace_id = getattr(record, "otelTraceID", None) or getattr(record, "trace_id", None)
        span_id = getattr(record, "otelSpanID", None) or getattr(record, "span_id", None)
        if trace_id and trace_id != "0":
            log_data["trace_id"] = str(trace_id)
        if span_id and span_id != "0":
            log_data["span_id"] = str(span_id)

        if record.exc_info:
            log_data["exc_info"] = sanitize_exc(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in log_data:
                continue
            log_data[key] = sanitize_field(key, value)

        return json.dumps(log_data, default=str)


def configure_json_logging(log_level: str = "INFO") -> None:
    """Configure root logger with JSON formatter.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
