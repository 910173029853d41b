"""Identity middleware for requests forwarded by the API gateway.

The billing service sits behind the platform gateway, which authenticates
the user and forwards the resolved identity as headers:

* ``X-Tenant-ID`` -- the company the user belongs to.
* ``X-User-ID`` -- the acting user (audit only).
* ``X-Gateway-Token`` -- shared secret proving the request came through
  the gateway.  Checked only when ``LEDGER_GATEWAY_TOKEN`` is configured.

``request.state.tenant_id`` and ``request.state.sub`` are populated for
downstream dependencies.  Endpoints listed in ``_PUBLIC_PATHS`` (health,
metrics, docs and the processor webhook, which authenticates by
signature) bypass the check.
"""

from __future__ import annotations

import hmac
import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from ledger_core.state.database import validate_tenant_id

logger = logging.getLogger(__name__)

_TENANT_HEADER = "x-tenant-id"
_USER_HEADER = "x-user-id"
_GATEWAY_TOKEN_HEADER = "x-gateway-token"

_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/metrics",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/api/v1/webhooks/stripe",
        "/api/v1/billing/plans",
    }
)


def _is_public_path(path: str) -> bool:
    return (path.rstrip("/") or "/") in _PUBLIC_PATHS


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Populate the tenant identity from trusted gateway headers.

    Parameters
    ----------
    app:
        The wrapped ASGI application.
    gateway_token:
        Expected ``X-Gateway-Token`` value.  Empty disables the check,
        which is only acceptable for local development.
    """

    def __init__(self, app: ASGIApp, gateway_token: str = "") -> None:
        super().__init__(app)
        self._gateway_token = gateway_token

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if _is_public_path(request.url.path):
            return await call_next(request)

        if self._gateway_token:
            presented = request.headers.get(_GATEWAY_TOKEN_HEADER, "")
            if not hmac.compare_digest(presented.encode(), self._gateway_token.encode()):
                logger.warning("Rejected request to %s without a valid gateway token", request.url.path)
                return JSONResponse(
                    status_code=401,
                    content={"detail": "Invalid gateway token"},
                )

        tenant_id = request.headers.get(_TENANT_HEADER, "").strip()
        if not tenant_id:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing X-Tenant-ID header"},
            )
        try:
            validate_tenant_id(tenant_id)
        except ValueError:
            return JSONResponse(
                status_code=401,
                content={"detail": "Malformed X-Tenant-ID header"},
            )

        request.state.tenant_id = tenant_id
        request.state.sub = request.headers.get(_USER_HEADER, "anonymous") or "anonymous"
        return await call_next(request)
