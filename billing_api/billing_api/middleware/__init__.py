"""Middleware components for the billing API."""

from __future__ import annotations

from billing_api.middleware.json_formatter import JSONFormatter
from billing_api.middleware.logging import RequestLoggingMiddleware
from billing_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter

__all__ = [
    "JSONFormatter",
    "RequestLoggingMiddleware",
    "TraceContextMiddleware",
    "TraceLoggingFilter",
]
