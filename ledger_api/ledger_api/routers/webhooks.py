"""Stripe webhook endpoint.

Public (no gateway identity); authenticated by the ``Stripe-Signature``
header instead.  Responds 400 only when the signature is invalid, so that
Stripe redelivers; every verified event is acknowledged with 200.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from ledger_api.dependencies import GatewayDep, SessionFactoryDep, SettingsDep
from ledger_api.schemas import WebhookAckResponse
from ledger_api.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    gateway: GatewayDep,
    session_factory: SessionFactoryDep,
) -> WebhookAckResponse:
    """Verify and reconcile one Stripe event."""
    if not settings.billing_enabled:
        return WebhookAckResponse(status="billing_disabled")

    body = await request.body()
    signature = request.headers.get("stripe-signature", "")
    result = await WebhookReconciler(session_factory, gateway).handle_delivery(body, signature)
    return WebhookAckResponse(status=result.status, event_id=result.event_id or None)
