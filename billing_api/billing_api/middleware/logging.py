"""Request-logging middleware.

One access-log record per request on the ``api.access`` logger, with the
method, path, status, duration, correlation id, trace ids and masked
headers.  Webhook signatures and admin tokens never reach the logs.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("api.access")

_SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "cookie", "stripe-signature", "x-api-key"})
_MASK: str = "***"

_CORRELATION_HEADER: str = "X-Correlation-ID"


def mask_headers(headers: Any) -> dict[str, str]:
    """Return a copy of *headers* with sensitive values masked."""
    return {key: (_MASK if key.lower() in _SENSITIVE_HEADERS else value) for key, value in headers.items()}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request and tag it with a correlation id.

    The correlation id is taken from ``X-Correlation-ID`` or generated, and
    echoed back on the response.  Client errors log at warning, server
    errors at error.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(_CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            status_code = response.status_code if response is not None else 500
            log_payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "trace_id": getattr(request.state, "trace_id", ""),
                "span_id": getattr(request.state, "span_id", ""),
                "headers": mask_headers(request.headers),
            }
            if status_code >= 500:
                logger.error("request completed", extra={"request": log_payload})
            elif status_code >= 400:
                logger.warning("request completed", extra={"request": log_payload})
            else:
                logger.info("request completed", extra={"request": log_payload})
