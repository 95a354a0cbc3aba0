"""JSON log formatter for log aggregation.

Emits each log record as a single-line JSON object whose fields can be
indexed without regex parsing.  Activate by setting
``API_STRUCTURED_LOGGING=true``; the application then replaces the default
text handlers with a ``StreamHandler`` using this formatter.

Output schema per line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "api.access",
        "message": "request completed",
        "tenant_id": "t-42",          // billing context passed via ``extra``
        "event_id": "evt_123",
        "request": { ... },           // present when emitted by RequestLoggingMiddleware
        "exc_info": "Traceback ..."   // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Billing context attributes copied from ``extra={...}`` when present.
_CONTEXT_FIELDS: tuple[str, ...] = (
    "tenant_id",
    "user_id",
    "event_id",
    "event_type",
    "external_account_ref",
)


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # W3C trace context injected by TraceLoggingFilter.
        for field in ("trace_id", "span_id"):
            value = getattr(record, field, None)
            if value:
                payload[field] = value

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        request_data = getattr(record, "request", None)
        if request_data is not None:
            payload["request"] = request_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
