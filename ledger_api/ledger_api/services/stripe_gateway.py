"""Stripe adapter for the payment processor boundary.

Outbound calls (customers, checkout sessions, portal sessions) run the
synchronous Stripe SDK in a worker thread, bounded by a timeout and
retried with exponential backoff on transient failures.  Once retries are
exhausted :class:`ExternalProcessorUnavailable` is raised; nothing here
ever hangs a request.

Inbound webhooks are verified against the endpoint secret before the
payload is parsed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable
from typing import Any

from ledger_api.config import APISettings
from ledger_core.billing.errors import ExternalProcessorUnavailable, InvalidSignature
from ledger_core.retry import RetryConfig, async_retry_with_backoff

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin async wrapper around the ``stripe`` SDK.

    Parameters
    ----------
    settings:
        API settings carrying the Stripe keys, timeout and retry budget.
    """

    def __init__(self, settings: APISettings) -> None:
        self._settings = settings
        self._retry = RetryConfig(
            max_retries=settings.stripe_max_retries,
            base_delay=settings.stripe_retry_base_delay,
        )

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def _call(self, operation: str, fn: Callable[[Any], Any]) -> Any:
        """Run ``fn(stripe)`` in a thread with timeout and retries.

        *fn* must pass an idempotency key to Stripe when it creates
        anything, because a timed-out attempt may still have succeeded.
        """
        stripe = self._get_stripe()
        timeout = self._settings.stripe_timeout_seconds

        async def _attempt() -> Any:
            return await asyncio.wait_for(asyncio.to_thread(fn, stripe), timeout=timeout)

        transient = (TimeoutError, stripe.APIConnectionError, stripe.RateLimitError)
        try:
            return await async_retry_with_backoff(_attempt, self._retry, transient, operation=f"stripe.{operation}")
        except TimeoutError as exc:
            logger.error("Stripe %s timed out after %d attempts", operation, self._retry.max_retries + 1)
            raise ExternalProcessorUnavailable(
                f"Payment processor did not respond in time ({operation}); please retry"
            ) from exc
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.error("Stripe %s unavailable: %s", operation, exc)
            raise ExternalProcessorUnavailable(f"Payment processor unavailable ({operation}); please retry") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe %s rejected: %s", operation, exc)
            raise ExternalProcessorUnavailable(
                f"Payment processor rejected the request ({operation})",
                retryable=False,
            ) from exc

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def create_customer(
        self,
        tenant_id: str,
        *,
        email: str | None = None,
        name: str | None = None,
    ) -> str:
        """Create a Stripe customer for *tenant_id* and return its id."""
        params: dict[str, Any] = {"metadata": {"tenant_id": tenant_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        key = f"customer-{tenant_id}-{uuid.uuid4().hex}"
        customer = await self._call(
            "create_customer",
            lambda stripe: stripe.Customer.create(**params, idempotency_key=key),
        )
        logger.info("Created Stripe customer %s for tenant=%s", customer["id"], tenant_id)
        return str(customer["id"])

    async def retrieve_customer(self, customer_ref: str) -> dict[str, Any] | None:
        """Return the customer, or ``None`` if it was deleted on Stripe's side."""
        customer = await self._call("retrieve_customer", lambda stripe: stripe.Customer.retrieve(customer_ref))
        if customer.get("deleted"):
            return None
        return dict(customer)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_checkout_session(self, params: dict[str, Any]) -> dict[str, str]:
        """Create a hosted checkout session.

        Returns
        -------
        dict
            ``session_id`` and ``url``.
        """
        key = f"checkout-{uuid.uuid4().hex}"
        session = await self._call(
            "create_checkout_session",
            lambda stripe: stripe.checkout.Session.create(**params, idempotency_key=key),
        )
        return {"session_id": str(session["id"]), "url": str(session["url"])}

    async def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        """Create a customer portal session and return its URL."""
        session = await self._call(
            "create_portal_session",
            lambda stripe: stripe.billing_portal.Session.create(customer=customer_ref, return_url=return_url),
        )
        return str(session["url"])

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, signature_header: str) -> dict[str, Any]:
        """Verify the ``Stripe-Signature`` header and return the parsed event.

        Raises
        ------
        InvalidSignature
            If the header is missing, the secret is not configured, the
            signature does not match, the timestamp is outside the
            tolerance window, or the payload is not a JSON event.
        """
        secret = self._settings.stripe_webhook_secret.get_secret_value()
        if not secret:
            logger.error("Webhook received but LEDGER_STRIPE_WEBHOOK_SECRET is not configured")
            raise InvalidSignature("Webhook secret is not configured")
        if not signature_header:
            raise InvalidSignature("Missing Stripe-Signature header")

        stripe = self._get_stripe()
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body,
                signature_header,
                secret,
                tolerance=self._settings.stripe_webhook_tolerance_seconds,
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise InvalidSignature("Signature verification failed") from exc

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise InvalidSignature("Invalid webhook payload") from exc
        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise InvalidSignature("Webhook payload is not an event")
        return event
