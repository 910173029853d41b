"""Tests for the identity, tracing and logging middleware."""

from __future__ import annotations

import json
import logging
import sys
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from ledger_api.dependencies import get_gateway, get_session_factory, get_settings
from ledger_api.main import create_app
from ledger_api.middleware.json_formatter import JSONFormatter
from ledger_api.middleware.logging import _level_for, _safe_headers
from ledger_api.middleware.trace_context import parse_traceparent
from ledger_core.billing.ledger import CreditLedger
from pydantic import SecretStr
from sqlalchemy.exc import OperationalError
from starlette.requests import Request

TENANT = "acme-logistics"


@pytest.fixture()
def guarded_app(test_settings, session_factory, gateway):
    settings = test_settings.model_copy(update={"gateway_token": SecretStr("gw-secret")})
    app = create_app(settings)
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    return app


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_gateway_token_enforced(self, guarded_app, provisioned) -> None:
        async with AsyncClient(transport=ASGITransport(app=guarded_app), base_url="http://test") as client:
            missing = await client.get("/api/v1/billing/current", headers={"X-Tenant-ID": TENANT})
            wrong = await client.get(
                "/api/v1/billing/current",
                headers={"X-Tenant-ID": TENANT, "X-Gateway-Token": "nope"},
            )
            ok = await client.get(
                "/api/v1/billing/current",
                headers={"X-Tenant-ID": TENANT, "X-Gateway-Token": "gw-secret"},
            )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert wrong.json()["detail"] == "Invalid gateway token"
        assert ok.status_code == 200

    @pytest.mark.asyncio
    async def test_public_paths_skip_token(self, guarded_app) -> None:
        async with AsyncClient(transport=ASGITransport(app=guarded_app), base_url="http://test") as client:
            resp = await client.get("/api/v1/billing/plans")
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_malformed_tenant(self, client) -> None:
        resp = await client.get("/api/v1/billing/current", headers={"X-Tenant-ID": "a" * 65})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Malformed X-Tenant-ID header"


class TestTracing:
    def test_parse_valid_traceparent(self) -> None:
        header = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"
        assert parse_traceparent(header) == ("4bf92f3577b34da6a3ce929d0e0e4736", "00f067aa0ba902b7")

    @pytest.mark.parametrize(
        "header",
        [
            "",
            "garbage",
            "ff-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01",
            "00-00000000000000000000000000000000-00f067aa0ba902b7-01",
            "00-4bf92f3577b34da6a3ce929d0e0e4736-0000000000000000-01",
        ],
    )
    def test_parse_invalid_traceparent(self, header: str) -> None:
        assert parse_traceparent(header) == ("", "")

    @pytest.mark.asyncio
    async def test_trace_id_propagated(self, client) -> None:
        resp = await client.get(
            "/api/v1/health",
            headers={"traceparent": "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"},
        )
        assert resp.headers["X-Trace-ID"] == "4bf92f3577b34da6a3ce929d0e0e4736"

    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client) -> None:
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "corr-123"})
        assert resp.headers["X-Correlation-ID"] == "corr-123"


class TestLogging:
    def test_json_formatter(self) -> None:
        record = logging.LogRecord("ledger_core.billing.ledger", logging.INFO, __file__, 1, "balance %d", (5,), None)
        record.trace_id = "abc"
        record.request = {"path": "/x"}

        payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "balance 5"
        assert payload["level"] == "INFO"
        assert payload["trace_id"] == "abc"
        assert payload["request"] == {"path": "/x"}
        assert "exc_info" not in payload

    def test_json_formatter_includes_traceback(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        payload = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in payload["exc_info"]

    def test_json_formatter_carries_webhook_event(self) -> None:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "event failed", (), None)
        record.webhook_event = {"id": "evt_1", "type": "invoice.paid"}
        record.span_id = ""

        payload = json.loads(JSONFormatter().format(record))

        assert payload["webhook_event"] == {"id": "evt_1", "type": "invoice.paid"}
        assert "span_id" not in payload

    @pytest.mark.parametrize(
        ("path", "status_code", "duration_ms", "expected"),
        [
            ("/api/v1/billing/deduct", 200, 12.0, logging.INFO),
            ("/api/v1/billing/deduct", 402, 12.0, logging.WARNING),
            ("/api/v1/billing/upgrade", 200, 2500.0, logging.WARNING),
            ("/api/v1/billing/upgrade", 503, 2500.0, logging.ERROR),
            ("/api/v1/health", 200, 1.0, logging.DEBUG),
            ("/metrics", 200, 1.0, logging.DEBUG),
        ],
    )
    def test_access_log_level(self, path: str, status_code: int, duration_ms: float, expected: int) -> None:
        assert _level_for(path, status_code, duration_ms) == expected

    def test_sensitive_headers_masked(self) -> None:
        request = Request(
            {
                "type": "http",
                "headers": [
                    (b"stripe-signature", b"t=1,v1=abc"),
                    (b"x-gateway-token", b"secret"),
                    (b"x-tenant-id", b"acme-logistics"),
                ],
            }
        )
        headers = _safe_headers(request)

        assert headers["stripe-signature"] == "***"
        assert headers["x-gateway-token"] == "***"
        assert headers["x-tenant-id"] == "acme-logistics"


class TestDatabaseErrors:
    @pytest.mark.asyncio
    async def test_database_error_is_generic_and_traceable(self, client, provisioned) -> None:
        failure = OperationalError("UPDATE tenant_billing", {}, Exception("disk I/O error"))
        with patch.object(CreditLedger, "deduct", AsyncMock(side_effect=failure)):
            resp = await client.post(
                "/api/v1/billing/credits/deduct",
                json={"amount": 1},
                headers={
                    "X-Tenant-ID": TENANT,
                    "traceparent": "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01",
                },
            )

        assert resp.status_code == 500
        assert resp.json() == {
            "detail": "Internal database error",
            "trace_id": "4bf92f3577b34da6a3ce929d0e0e4736",
        }
