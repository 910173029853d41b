"""Reconciles billing state with the payment processor's webhook feed.

Stripe delivers events at least once and in no particular order.  Each
event is handled in its own transaction together with its row in the
``webhook_events`` journal, keyed by the Stripe event id:

1. Already journaled as processed or ignored: acknowledged as a duplicate
   with no effects.  A previously failed event is attempted again.
2. Otherwise the handler runs and the journal row is written in the same
   transaction.  A concurrent delivery of the same event loses on the
   journal's primary key and rolls back its effects.
3. Business failures are logged with a traceback, journaled as failed and
   still acknowledged, so a bug cannot trigger an endless redelivery storm.
   Unknown tenants are journaled as ignored.

Only a bad signature is reported back to Stripe as a failure.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_api.middleware.prometheus import WEBHOOK_EVENTS_TOTAL, record_credit_mutation
from ledger_api.services.checkout_service import CREDIT_PURCHASE_TYPE
from ledger_api.services.stripe_gateway import StripeGateway
from ledger_core.billing.catalog import parse_plan_name
from ledger_core.billing.errors import UnknownTenant
from ledger_core.billing.ledger import CreditLedger
from ledger_core.billing.models import (
    BillingCycle,
    BillingStatus,
    CreditMutation,
    SubscriptionStatus,
    WebhookEventStatus,
)
from ledger_core.billing.state_machine import PlanStateMachine, is_superseded_subscription
from ledger_core.state.database import set_tenant_context
from ledger_core.state.repository import (
    BillingDirectoryRepository,
    BillingHistoryRepository,
    TenantBillingRepository,
    WebhookEventRepository,
)

logger = logging.getLogger(__name__)

# Stripe subscription status -> local status.  Anything unknown maps to ACTIVE.
_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "trialing": SubscriptionStatus.TRIALING,
}

# Invoices for the first period of a subscription are already accounted
# for by checkout.session.completed.
_INITIAL_INVOICE_REASON = "subscription_create"
_RENEWAL_INVOICE_REASON = "subscription_cycle"

_Outcome = tuple[WebhookEventStatus, str | None, str | None]


class WebhookResult(BaseModel):
    """What happened to one delivered event."""

    event_id: str
    event_type: str
    status: Literal["processed", "ignored", "failed", "duplicate"]
    tenant_id: str | None = None
    detail: str | None = None


def _ref(value: Any) -> str | None:
    """Return the id of a Stripe reference that may be a string or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _period_end(subscription: dict[str, Any]) -> datetime | None:
    """``current_period_end`` lives on the subscription in older API versions, on items in newer ones."""
    end = subscription.get("current_period_end")
    if end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            end = items[0].get("current_period_end")
    return _timestamp(end)


def _invoice_subscription(invoice: dict[str, Any]) -> str | None:
    ref = _ref(invoice.get("subscription"))
    if ref is None:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        ref = _ref(details.get("subscription"))
    return ref


def _cents_to_amount(value: Any) -> Decimal:
    return (Decimal(int(value or 0)) / 100).quantize(Decimal("0.01"))


class WebhookReconciler:
    """Applies verified Stripe events to the ledger and the plan state machine.

    Parameters
    ----------
    session_factory:
        Factory for the per-event sessions.  The reconciler owns commits.
    gateway:
        Used to verify webhook signatures.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: StripeGateway,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        # Ledger mutations of the event in flight, counted once it commits.
        self._mutations: list[CreditMutation | None] = []
        self._handlers: dict[str, Callable[[AsyncSession, str, dict[str, Any]], Awaitable[_Outcome]]] = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_failed,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_delivery(self, payload: bytes, signature_header: str) -> WebhookResult:
        """Verify and process one webhook delivery.

        Raises
        ------
        InvalidSignature
            If the delivery cannot be authenticated.  Nothing is written.
        """
        event = self._gateway.verify_webhook(payload, signature_header)
        return await self.process_event(event)

    async def process_batch(self, events: Iterable[dict[str, Any]]) -> list[WebhookResult]:
        """Process already-verified events one by one; a failure never stops the batch."""
        return [await self.process_event(event) for event in events]

    async def process_event(self, event: dict[str, Any]) -> WebhookResult:
        """Apply one verified event exactly once."""
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        data_object = (event.get("data") or {}).get("object") or {}

        if not event_id:
            logger.warning("Dropping webhook event of type %r without an id", event_type)
            return self._finish(
                WebhookResult(event_id="", event_type=event_type, status="ignored", detail="Event has no id")
            )

        async with self._session_factory() as session:
            journal = WebhookEventRepository(session)
            existing = await journal.get(event_id)
            if existing is not None and existing.status != WebhookEventStatus.FAILED.value:
                logger.info("Webhook event %s (%s) already %s; skipping", event_id, event_type, existing.status)
                return self._finish(
                    WebhookResult(
                        event_id=event_id,
                        event_type=event_type,
                        status="duplicate",
                        tenant_id=existing.tenant_id,
                        detail=f"Already {existing.status}",
                    )
                )

            self._mutations = []
            handler = self._handlers.get(event_type)
            try:
                if handler is None:
                    status, tenant_id, detail = (WebhookEventStatus.IGNORED, None, "Unhandled event type")
                else:
                    status, tenant_id, detail = await handler(session, event_id, data_object)
                await journal.record(
                    event_id=event_id,
                    event_type=event_type,
                    status=status.value,
                    tenant_id=tenant_id,
                    detail=detail,
                )
                await session.commit()
                for mutation in self._mutations:
                    record_credit_mutation(mutation)
            except IntegrityError:
                await session.rollback()
                return await self._after_integrity_error(session, event_id, event_type)
            except UnknownTenant as exc:
                await session.rollback()
                logger.warning("Webhook event %s (%s): %s; ignoring", event_id, event_type, exc.message)
                status, tenant_id, detail = (WebhookEventStatus.IGNORED, None, exc.message)
                await self._journal_outcome(session, event_id, event_type, status, tenant_id, detail)
            except Exception as exc:
                await session.rollback()
                logger.exception(
                    "Webhook event %s (%s) failed; acknowledged for operator follow-up",
                    event_id,
                    event_type,
                    extra={"webhook_event": {"id": event_id, "type": event_type}},
                )
                status, tenant_id, detail = (WebhookEventStatus.FAILED, None, f"{type(exc).__name__}: {exc}")
                await self._journal_outcome(session, event_id, event_type, status, tenant_id, detail)

        return self._finish(
            WebhookResult(
                event_id=event_id,
                event_type=event_type,
                status=status.value,
                tenant_id=tenant_id,
                detail=detail,
            )
        )

    # ------------------------------------------------------------------
    # Journal helpers
    # ------------------------------------------------------------------

    def _finish(self, result: WebhookResult) -> WebhookResult:
        WEBHOOK_EVENTS_TOTAL.labels(event_type=result.event_type or "unknown", outcome=result.status).inc()
        return result

    async def _journal_outcome(
        self,
        session: AsyncSession,
        event_id: str,
        event_type: str,
        status: WebhookEventStatus,
        tenant_id: str | None,
        detail: str | None,
    ) -> None:
        """Write the journal row for an event whose effects were rolled back."""
        try:
            await WebhookEventRepository(session).record(
                event_id=event_id,
                event_type=event_type,
                status=status.value,
                tenant_id=tenant_id,
                detail=detail,
            )
            await session.commit()
        except IntegrityError:
            # A concurrent delivery journaled the event first.
            await session.rollback()

    async def _after_integrity_error(self, session: AsyncSession, event_id: str, event_type: str) -> WebhookResult:
        """Classify a constraint violation as a concurrent duplicate or a failure."""
        existing = await WebhookEventRepository(session).get(event_id)
        if existing is not None and existing.status != WebhookEventStatus.FAILED.value:
            logger.info("Webhook event %s (%s) processed concurrently; treating as duplicate", event_id, event_type)
            return self._finish(
                WebhookResult(
                    event_id=event_id,
                    event_type=event_type,
                    status="duplicate",
                    tenant_id=existing.tenant_id,
                    detail="Processed by a concurrent delivery",
                )
            )
        logger.error("Webhook event %s (%s) violated a constraint", event_id, event_type, exc_info=True)
        detail = "Constraint violation while applying event"
        await self._journal_outcome(session, event_id, event_type, WebhookEventStatus.FAILED, None, detail)
        return self._finish(
            WebhookResult(event_id=event_id, event_type=event_type, status="failed", detail=detail)
        )

    # ------------------------------------------------------------------
    # Tenant resolution
    # ------------------------------------------------------------------

    async def _resolve_tenant(self, session: AsyncSession, obj: dict[str, Any]) -> str:
        """Find the tenant an event belongs to.

        The customer reference wins.  When it is not bound yet (the event
        raced ahead of checkout bookkeeping) the ``tenant_id`` metadata
        written at checkout is used and the customer reference is bound
        to that tenant on the spot.

        Raises
        ------
        UnknownTenant
            If neither reference identifies an active tenant.
        """
        customer_ref = _ref(obj.get("customer"))
        metadata = obj.get("metadata") or {}
        claimed = metadata.get("tenant_id") or obj.get("client_reference_id")
        directory = BillingDirectoryRepository(session)

        tenant_id: str | None = None
        if customer_ref:
            tenant_id = await directory.tenant_for_customer_ref(customer_ref)
        if tenant_id is None and claimed and await directory.is_active_tenant(str(claimed)):
            tenant_id = str(claimed)
            if customer_ref:
                bound = await TenantBillingRepository(session, tenant_id).bind_customer_ref(customer_ref)
                if bound:
                    logger.info("Bound customer %s to tenant=%s from event metadata", customer_ref, tenant_id)
                else:
                    logger.warning(
                        "Tenant=%s is bound to another customer than %s",
                        tenant_id,
                        customer_ref,
                    )
        if tenant_id is None:
            raise UnknownTenant(customer_ref or claimed)

        await set_tenant_context(session, tenant_id)
        return tenant_id

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_checkout_completed(self, session: AsyncSession, event_id: str, obj: dict[str, Any]) -> _Outcome:
        payment_status = obj.get("payment_status")
        if payment_status not in (None, "paid", "no_payment_required"):
            return (WebhookEventStatus.IGNORED, None, f"Checkout not paid ({payment_status})")

        tenant_id = await self._resolve_tenant(session, obj)
        metadata = obj.get("metadata") or {}
        session_id = str(obj.get("id") or event_id)
        history = BillingHistoryRepository(session, tenant_id)
        now = datetime.now(UTC)

        if metadata.get("type") == CREDIT_PURCHASE_TYPE:
            amount = Decimal(str(metadata.get("amount") or _cents_to_amount(obj.get("amount_total"))))
            mutation = await CreditLedger(session, tenant_id).purchase(
                amount,
                reason=f"Purchased credits (checkout {session_id})",
                metadata={"checkout_session": session_id, "event_id": event_id},
            )
            self._mutations.append(mutation)
            await history.record(
                invoice_number=f"CR-{session_id}",
                amount=amount,
                status=BillingStatus.PAID.value,
                paid_at=now,
                external_payment_ref=_ref(obj.get("payment_intent")),
                external_event_id=event_id,
            )
            return (
                WebhookEventStatus.PROCESSED,
                tenant_id,
                f"Credit purchase of {amount}: {mutation.amount} credits",
            )

        plan = parse_plan_name(metadata.get("plan_name"))
        if plan is None:
            logger.warning("Checkout %s completed without a plan or purchase type in metadata", session_id)
            return (WebhookEventStatus.IGNORED, tenant_id, "Checkout metadata names no plan")

        try:
            cycle = BillingCycle(str(metadata.get("billing_cycle") or BillingCycle.MONTHLY.value).lower())
        except ValueError:
            cycle = BillingCycle.MONTHLY
        result = await PlanStateMachine(session, tenant_id).upgrade(
            plan,
            customer_ref=_ref(obj.get("customer")),
            subscription_ref=_ref(obj.get("subscription")),
            billing_cycle=cycle,
        )
        self._mutations.append(result.credit_change)
        # The history row names the purchased plan, not whatever the tenant
        # record said before this transaction.
        await history.record(
            invoice_number=f"SUB-{session_id}",
            amount=_cents_to_amount(obj.get("amount_total")),
            plan=plan.value,
            status=BillingStatus.PAID.value,
            paid_at=now,
            external_invoice_ref=_ref(obj.get("invoice")),
            external_event_id=event_id,
        )
        return (WebhookEventStatus.PROCESSED, tenant_id, result.message)

    async def _on_subscription_changed(self, session: AsyncSession, event_id: str, obj: dict[str, Any]) -> _Outcome:
        tenant_id = await self._resolve_tenant(session, obj)
        raw_status = str(obj.get("status") or "")
        status = _STATUS_MAP.get(raw_status)
        if status is None:
            logger.info("Unknown subscription status %r for tenant=%s; treating as ACTIVE", raw_status, tenant_id)
            status = SubscriptionStatus.ACTIVE
        result = await PlanStateMachine(session, tenant_id).sync_subscription(
            status,
            subscription_ref=_ref(obj.get("id")),
            next_billing_date=_period_end(obj),
        )
        return (WebhookEventStatus.PROCESSED, tenant_id, result.message or f"Status {result.status.value}")

    async def _on_subscription_deleted(self, session: AsyncSession, event_id: str, obj: dict[str, Any]) -> _Outcome:
        tenant_id = await self._resolve_tenant(session, obj)
        subscription_ref = _ref(obj.get("id"))
        record = await TenantBillingRepository(session, tenant_id).require()
        if is_superseded_subscription(record, subscription_ref):
            logger.info(
                "Ignoring deletion of old subscription %s for tenant=%s (current %s)",
                subscription_ref,
                tenant_id,
                record.external_subscription_ref,
            )
            return (WebhookEventStatus.IGNORED, tenant_id, "Deleted subscription is not the current one")
        result = await PlanStateMachine(session, tenant_id).cancel_subscription()
        self._mutations.append(result.credit_change)
        return (WebhookEventStatus.PROCESSED, tenant_id, result.message)

    async def _on_invoice_paid(self, session: AsyncSession, event_id: str, obj: dict[str, Any]) -> _Outcome:
        billing_reason = obj.get("billing_reason")
        subscription_ref = _invoice_subscription(obj)
        if billing_reason == _INITIAL_INVOICE_REASON:
            return (WebhookEventStatus.IGNORED, None, "Initial subscription invoice is recorded at checkout")

        tenant_id = await self._resolve_tenant(session, obj)
        record = await TenantBillingRepository(session, tenant_id).require()
        invoice_ref = _ref(obj.get("id"))
        history_id = await BillingHistoryRepository(session, tenant_id).record(
            invoice_number=str(obj.get("number") or f"INV-{invoice_ref or event_id}"),
            amount=_cents_to_amount(obj.get("amount_paid")),
            plan=record.current_plan,
            status=BillingStatus.PAID.value,
            paid_at=_timestamp((obj.get("status_transitions") or {}).get("paid_at")) or datetime.now(UTC),
            billing_period_start=_timestamp(obj.get("period_start")),
            billing_period_end=_timestamp(obj.get("period_end")),
            external_invoice_ref=invoice_ref,
            external_payment_ref=_ref(obj.get("payment_intent")),
            external_event_id=event_id,
        )
        if history_id is None:
            # invoice.paid and invoice.payment_succeeded both arrive for one invoice.
            return (WebhookEventStatus.PROCESSED, tenant_id, "Invoice already recorded")

        if billing_reason != _RENEWAL_INVOICE_REASON or not subscription_ref:
            return (WebhookEventStatus.PROCESSED, tenant_id, "Invoice recorded")

        mutation = await CreditLedger(session, tenant_id).refill(
            metadata={"invoice": invoice_ref, "event_id": event_id},
        )
        self._mutations.append(mutation)
        detail = f"Renewal refill {mutation.amount:+d}" if mutation.applied else mutation.message
        return (WebhookEventStatus.PROCESSED, tenant_id, detail)

    async def _on_invoice_failed(self, session: AsyncSession, event_id: str, obj: dict[str, Any]) -> _Outcome:
        tenant_id = await self._resolve_tenant(session, obj)
        subscription_ref = _invoice_subscription(obj)
        record = await TenantBillingRepository(session, tenant_id).require()
        if is_superseded_subscription(record, subscription_ref):
            logger.info("Ignoring failed payment on old subscription %s for tenant=%s", subscription_ref, tenant_id)
            return (WebhookEventStatus.IGNORED, tenant_id, "Failed invoice is for a superseded subscription")
        result = await PlanStateMachine(session, tenant_id).mark_past_due()
        return (
            WebhookEventStatus.PROCESSED,
            tenant_id,
            "Marked PAST_DUE" if result.applied else "Already PAST_DUE",
        )
