"""Prometheus metrics for the billing API.

HTTP RED metrics (rate, errors, duration) plus billing counters:
webhook events by type and outcome, downgrade sweep outcomes, checkout
sessions created and credits moved through the ledger by type.

Path normalisation collapses path parameters to keep label cardinality
bounded.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from ledger_core.billing.models import CreditMutation

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "fleetledger_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "fleetledger_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "fleetledger_webhook_events_total",
    "Payment processor webhook events by event type and outcome",
    ["event_type", "outcome"],
)

DOWNGRADE_SWEEP_TOTAL = Counter(
    "fleetledger_downgrade_sweep_total",
    "Pending downgrades examined by the sweep, by outcome",
    ["outcome"],
)

CHECKOUT_SESSIONS_TOTAL = Counter(
    "fleetledger_checkout_sessions_total",
    "Checkout sessions created, by kind and outcome",
    ["kind", "outcome"],
)

LEDGER_CREDITS_TOTAL = Counter(
    "fleetledger_ledger_credits_total",
    "Credits moved through the ledger, by transaction type",
    ["type"],
)

_PATH_PARAM_PATTERNS = [
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    (re.compile(r"/[0-9a-f]{12,64}"), "/{id}"),
    (re.compile(r"/\d+"), "/{id}"),
]

_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


def record_credit_mutation(mutation: CreditMutation | None) -> None:
    """Count the credits an applied ledger mutation moved."""
    if mutation is not None and mutation.applied and mutation.amount:
        LEDGER_CREDITS_TOTAL.labels(type=mutation.type.value).inc(abs(mutation.amount))


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(method=method, path=normalised, status_code=str(response.status_code)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)
        return response
