"""W3C Trace Context propagation.

Webhook deliveries and admin calls are tagged with a trace id so that one
request's log lines (verification, transition, every side effect) can be
pulled out of the aggregated logs together.  An incoming ``traceparent``
header is honoured; otherwise a fresh trace is started.  The trace id is
echoed back in ``X-Trace-ID``.

Header format::

    traceparent: {version}-{trace_id}-{parent_span_id}-{flags}
    Example:     00-4bf92f3577b16e8153e785e29fc5f28c-d75597dee50b0cac-01
"""

from __future__ import annotations

import contextvars
import logging
import os
import re
from typing import NamedTuple

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")
_span_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("span_id", default="")

_TRACEPARENT_RE = re.compile(r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")


class ParentTrace(NamedTuple):
    trace_id: str
    parent_span_id: str
    flags: str


def parse_traceparent(header: str | None) -> ParentTrace | None:
    """Parse a ``traceparent`` header; ``None`` when missing or invalid.

    Version ``ff`` and all-zero ids are invalid.
    """
    if not header:
        return None
    match = _TRACEPARENT_RE.match(header.strip().lower())
    if match is None:
        logger.debug("Ignoring malformed traceparent header: %s", header)
        return None

    version, trace_id, parent_span_id, flags = match.groups()
    if version == "ff" or trace_id == "0" * 32 or parent_span_id == "0" * 16:
        logger.debug("Ignoring invalid traceparent header: %s", header)
        return None
    return ParentTrace(trace_id, parent_span_id, flags)


def get_trace_id() -> str:
    """Return the current trace id (empty outside a request)."""
    return _trace_id_var.get()


def get_span_id() -> str:
    """Return the current span id (empty outside a request)."""
    return _span_id_var.get()


class TraceContextMiddleware(BaseHTTPMiddleware):
    """Continue or start a trace for every request.

    A new span id is always generated for this service.  Both ids are
    stored on context variables (for logging) and on ``request.state``.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        parent = parse_traceparent(request.headers.get("traceparent"))
        trace_id = parent.trace_id if parent is not None else os.urandom(16).hex()
        span_id = os.urandom(8).hex()

        _trace_id_var.set(trace_id)
        _span_id_var.set(span_id)
        request.state.trace_id = trace_id
        request.state.span_id = span_id
        request.state.parent_span_id = parent.parent_span_id if parent is not None else ""

        response = await call_next(request)
        response.headers["X-Trace-ID"] = trace_id
        return response


class TraceLoggingFilter(logging.Filter):
    """Copy the current trace and span ids onto every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()  # type: ignore[attr-defined]
        record.span_id = _span_id_var.get()  # type: ignore[attr-defined]
        return True
