"""Access log for the billing API.

One structured record per request, passed to the formatter as
``extra={"request": {...}}``.  Probe traffic (health and metrics) is
logged at DEBUG so scrapes do not drown out billing calls; requests
slower than ``_SLOW_REQUEST_MS`` are promoted to WARNING since they are
almost always a slow payment processor.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("ledger_api.access")

_CORRELATION_HEADER = "X-Correlation-ID"

# Values replaced by ``***`` in the logged header map.
_SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "cookie", "x-gateway-token", "stripe-signature"})

_PROBE_PATHS: frozenset[str] = frozenset({"/api/v1/health", "/metrics"})

_SLOW_REQUEST_MS = 2000.0


def _safe_headers(request: Request) -> dict[str, str]:
    """Return the request headers with credentials and signatures masked."""
    return {name: "***" if name.lower() in _SENSITIVE_HEADERS else value for name, value in request.headers.items()}


def _level_for(path: str, status_code: int, duration_ms: float) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400 or duration_ms >= _SLOW_REQUEST_MS:
        return logging.WARNING
    if path in _PROBE_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit the access log record and echo ``X-Correlation-ID``.

    The correlation id is taken from the caller (the platform gateway
    forwards its own) or generated.  Tenant and user come from
    ``request.state`` as set by the authentication middleware, so they
    are absent for public endpoints such as the Stripe webhook.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(_CORRELATION_HEADER) or uuid.uuid4().hex
        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            duration_ms = round((time.monotonic() - started) * 1000, 2)
            state = request.state
            entry: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "correlation_id": correlation_id,
                "tenant_id": getattr(state, "tenant_id", None),
                "user_id": getattr(state, "sub", None),
                "trace_id": getattr(state, "trace_id", ""),
                "client": request.client.host if request.client else None,
                "headers": _safe_headers(request),
            }
            if request.url.query:
                entry["query"] = request.url.query
            logger.log(
                _level_for(request.url.path, status_code, duration_ms),
                "%s %s -> %d (%.0f ms)",
                request.method,
                request.url.path,
                status_code,
                duration_ms,
                extra={"request": entry},
            )
