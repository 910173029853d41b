"""Middleware components for the billing API."""

from __future__ import annotations

from ledger_api.middleware.auth import AuthenticationMiddleware
from ledger_api.middleware.logging import RequestLoggingMiddleware
from ledger_api.middleware.prometheus import PrometheusMiddleware
from ledger_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter

__all__ = [
    "AuthenticationMiddleware",
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
    "TraceContextMiddleware",
    "TraceLoggingFilter",
]
