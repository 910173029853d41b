"""Tests for ledger_api.services.webhook_reconciler.

Covers:
- Exactly-once application of replayed events
- Plan checkouts, credit purchases and renewal refills
- invoice.paid / invoice.payment_succeeded arriving for the same invoice
- Unknown tenants, unpaid checkouts and unhandled event types
- Failure isolation within a batch and retry of failed events
- Signature verification
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from ledger_api.services.webhook_reconciler import WebhookReconciler
from ledger_core.billing.errors import InvalidSignature
from ledger_core.billing.ledger import CreditLedger
from ledger_core.billing.state_machine import PlanStateMachine
from ledger_core.state.repository import (
    BillingHistoryRepository,
    CreditTransactionRepository,
    TenantBillingRepository,
    WebhookEventRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

TENANT = "acme-logistics"


@pytest.fixture()
def reconciler(session_factory: async_sessionmaker[AsyncSession], gateway: Any) -> WebhookReconciler:
    return WebhookReconciler(session_factory, gateway)


async def _snapshot(session_factory: async_sessionmaker[AsyncSession], tenant_id: str = TENANT) -> dict[str, Any]:
    async with session_factory() as session:
        record = await TenantBillingRepository(session, tenant_id).require()
        return {
            "plan": record.current_plan,
            "status": record.subscription_status,
            "balance": record.credit_balance,
            "customer": record.external_customer_ref,
            "transactions": await CreditTransactionRepository(session, tenant_id).count(),
            "history": len(await BillingHistoryRepository(session, tenant_id).list_recent()),
        }


def _invoice(
    invoice_id: str = "in_renewal_1",
    *,
    billing_reason: str = "subscription_cycle",
    customer: str = "cus_test_1",
) -> dict[str, Any]:
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "subscription": "sub_test_1",
        "billing_reason": billing_reason,
        "number": f"NUM-{invoice_id}",
        "amount_paid": 4900,
        "period_start": 1735689600,
        "period_end": 1738368000,
        "status_transitions": {"paid_at": 1735689600},
    }


# ---------------------------------------------------------------------------
# Checkout completion
# ---------------------------------------------------------------------------


class TestCheckoutCompleted:
    @pytest.mark.asyncio
    async def test_upgrade_applied(self, reconciler, session_factory, provisioned, checkout_completed) -> None:
        result = await reconciler.process_event(checkout_completed("Starter"))

        assert result.status == "processed"
        assert result.tenant_id == TENANT
        state = await _snapshot(session_factory)
        assert state["plan"] == "Starter"
        assert state["balance"] == 100
        assert state["customer"] == "cus_test_1"
        assert state["history"] == 1

    @pytest.mark.asyncio
    async def test_replayed_event_applied_once(
        self, reconciler, session_factory, provisioned, checkout_completed
    ) -> None:
        event = checkout_completed("Starter", event_id="evt_replay")

        first = await reconciler.process_event(event)
        after_first = await _snapshot(session_factory)
        second = await reconciler.process_event(event)
        after_second = await _snapshot(session_factory)

        assert first.status == "processed"
        assert second.status == "duplicate"
        assert after_second == after_first

    @pytest.mark.asyncio
    async def test_history_names_purchased_plan(
        self, reconciler, session_factory, provisioned, checkout_completed
    ) -> None:
        await reconciler.process_event(checkout_completed("Professional"))

        async with session_factory() as session:
            [row] = await BillingHistoryRepository(session, TENANT).list_recent()
        assert row.plan == "Professional"
        assert row.invoice_number == "SUB-cs_test_1"

    @pytest.mark.asyncio
    async def test_credit_purchase(self, reconciler, session_factory, provisioned, event_factory) -> None:
        event = event_factory(
            "checkout.session.completed",
            {
                "id": "cs_credits_1",
                "mode": "payment",
                "customer": "cus_test_1",
                "payment_status": "paid",
                "amount_total": 1000,
                "payment_intent": "pi_1",
                "metadata": {"tenant_id": TENANT, "type": "credit_purchase", "amount": "10", "credits_amount": "80"},
            },
        )
        result = await reconciler.process_event(event)

        assert result.status == "processed"
        state = await _snapshot(session_factory)
        assert state["balance"] == 85
        assert state["plan"] == "Free"
        assert state["history"] == 1

    @pytest.mark.asyncio
    async def test_unpaid_checkout_ignored(self, reconciler, session_factory, provisioned, checkout_completed) -> None:
        result = await reconciler.process_event(checkout_completed("Starter", payment_status="unpaid"))

        assert result.status == "ignored"
        assert (await _snapshot(session_factory))["plan"] == "Free"

    @pytest.mark.asyncio
    async def test_unknown_tenant_ignored_and_journaled(
        self, reconciler, session_factory, provisioned, checkout_completed
    ) -> None:
        event = checkout_completed("Starter", tenant_id="ghost-co", customer="cus_ghost")
        result = await reconciler.process_event(event)

        assert result.status == "ignored"
        async with session_factory() as session:
            row = await WebhookEventRepository(session).get(event["id"])
        assert row is not None
        assert row.status == "ignored"
        assert (await _snapshot(session_factory))["balance"] == 5


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class TestInvoices:
    @pytest.mark.asyncio
    async def test_paid_and_payment_succeeded_refill_once(
        self, reconciler, session_factory, provisioned, checkout_completed, event_factory
    ) -> None:
        await reconciler.process_event(checkout_completed("Starter"))
        before = await _snapshot(session_factory)

        paid = await reconciler.process_event(event_factory("invoice.paid", _invoice()))
        succeeded = await reconciler.process_event(event_factory("invoice.payment_succeeded", _invoice()))

        assert paid.status == "processed"
        assert succeeded.status == "processed"
        assert succeeded.detail == "Invoice already recorded"
        after = await _snapshot(session_factory)
        assert after["balance"] == before["balance"] + 100
        assert after["transactions"] == before["transactions"] + 1
        assert after["history"] == before["history"] + 1

    @pytest.mark.asyncio
    async def test_initial_invoice_ignored(
        self, reconciler, session_factory, provisioned, checkout_completed, event_factory
    ) -> None:
        await reconciler.process_event(checkout_completed("Starter"))
        before = await _snapshot(session_factory)

        result = await reconciler.process_event(
            event_factory("invoice.paid", _invoice("in_first", billing_reason="subscription_create"))
        )

        assert result.status == "ignored"
        assert await _snapshot(session_factory) == before

    @pytest.mark.asyncio
    async def test_payment_failed_marks_past_due(
        self, reconciler, session_factory, provisioned, checkout_completed, event_factory
    ) -> None:
        await reconciler.process_event(checkout_completed("Starter"))
        result = await reconciler.process_event(event_factory("invoice.payment_failed", _invoice("in_failed")))

        assert result.status == "processed"
        state = await _snapshot(session_factory)
        assert state["status"] == "PAST_DUE"
        assert state["plan"] == "Starter"
        assert state["balance"] == 100


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_status_mirrored(
        self, reconciler, session_factory, provisioned, checkout_completed, event_factory
    ) -> None:
        await reconciler.process_event(checkout_completed("Starter"))
        subscription = {"id": "sub_test_1", "customer": "cus_test_1", "status": "past_due"}

        await reconciler.process_event(event_factory("customer.subscription.updated", subscription))
        assert (await _snapshot(session_factory))["status"] == "PAST_DUE"

        subscription["status"] = "some_future_status"
        await reconciler.process_event(event_factory("customer.subscription.updated", subscription))
        assert (await _snapshot(session_factory))["status"] == "ACTIVE"

    @pytest.mark.asyncio
    async def test_deleted_returns_to_free(
        self, reconciler, session_factory, provisioned, checkout_completed, event_factory
    ) -> None:
        await reconciler.process_event(checkout_completed("Professional"))
        result = await reconciler.process_event(
            event_factory("customer.subscription.deleted", {"id": "sub_test_1", "customer": "cus_test_1"})
        )

        assert result.status == "processed"
        state = await _snapshot(session_factory)
        assert (state["plan"], state["status"], state["balance"]) == ("Free", "CANCELED", 0)

    @pytest.mark.asyncio
    async def test_deleting_old_subscription_ignored(
        self, reconciler, session_factory, provisioned, checkout_completed, event_factory
    ) -> None:
        await reconciler.process_event(checkout_completed("Starter"))
        result = await reconciler.process_event(
            event_factory("customer.subscription.deleted", {"id": "sub_old", "customer": "cus_test_1"})
        )

        assert result.status == "ignored"
        assert (await _snapshot(session_factory))["plan"] == "Starter"

    @pytest.mark.asyncio
    async def test_enterprise_contract_outlives_old_subscription(
        self, reconciler, session_factory, provisioned, checkout_completed, event_factory
    ) -> None:
        await reconciler.process_event(checkout_completed("Professional"))
        async with session_factory() as session:
            await PlanStateMachine(session, TENANT).activate_enterprise()
            await session.commit()

        old = {"id": "sub_test_1", "customer": "cus_test_1", "status": "past_due"}
        results = [
            await reconciler.process_event(event_factory("customer.subscription.updated", old)),
            await reconciler.process_event(event_factory("invoice.payment_failed", _invoice("in_last"))),
            await reconciler.process_event(event_factory("customer.subscription.deleted", old)),
        ]

        assert [r.status for r in results] == ["processed", "ignored", "ignored"]
        state = await _snapshot(session_factory)
        assert (state["plan"], state["status"], state["balance"]) == ("Enterprise", "ACTIVE", -1)


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_unhandled_type_ignored(self, reconciler, event_factory) -> None:
        result = await reconciler.process_event(event_factory("customer.tax_id.created", {"id": "txi_1"}))
        assert result.status == "ignored"

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_batch(
        self, reconciler, session_factory, provisioned, checkout_completed, event_factory
    ) -> None:
        await reconciler.process_event(checkout_completed("Starter"))
        failing = event_factory("invoice.payment_failed", _invoice("in_boom"), event_id="evt_boom")
        renewal = event_factory("invoice.paid", _invoice("in_ok"))

        with patch.object(PlanStateMachine, "mark_past_due", AsyncMock(side_effect=RuntimeError("boom"))):
            results = await reconciler.process_batch([failing, renewal])

        assert [r.status for r in results] == ["failed", "processed"]
        state = await _snapshot(session_factory)
        assert state["status"] == "ACTIVE"
        assert state["balance"] == 200

        retried = await reconciler.process_event(failing)
        assert retried.status == "processed"
        assert (await _snapshot(session_factory))["status"] == "PAST_DUE"
        async with session_factory() as session:
            row = await WebhookEventRepository(session).get("evt_boom")
        assert row is not None
        assert row.attempts == 2

    @pytest.mark.asyncio
    async def test_event_without_id_dropped(self, reconciler) -> None:
        result = await reconciler.process_event({"type": "invoice.paid", "data": {"object": {}}})
        assert result.status == "ignored"


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------


class TestHandleDelivery:
    @pytest.mark.asyncio
    async def test_valid_signature_processed(
        self, reconciler, session_factory, provisioned, checkout_completed, signed
    ) -> None:
        payload, header = signed(checkout_completed("Starter"))
        result = await reconciler.handle_delivery(payload, header)

        assert result.status == "processed"
        assert (await _snapshot(session_factory))["plan"] == "Starter"

    @pytest.mark.asyncio
    async def test_bad_signature_changes_nothing(
        self, reconciler, session_factory, provisioned, checkout_completed, signed
    ) -> None:
        event = checkout_completed("Starter")
        payload, header = signed(event, "whsec_wrong")

        with pytest.raises(InvalidSignature):
            await reconciler.handle_delivery(payload, header)

        assert (await _snapshot(session_factory))["plan"] == "Free"
        async with session_factory() as session:
            assert await WebhookEventRepository(session).get(event["id"]) is None

    @pytest.mark.asyncio
    async def test_missing_header(self, reconciler, checkout_completed, signed) -> None:
        payload, _ = signed(checkout_completed("Starter"))
        with pytest.raises(InvalidSignature, match="Missing"):
            await reconciler.handle_delivery(payload, "")

    @pytest.mark.asyncio
    async def test_tampered_payload(self, reconciler, checkout_completed, signed) -> None:
        payload, header = signed(checkout_completed("Starter"))
        with pytest.raises(InvalidSignature):
            await reconciler.handle_delivery(payload.replace(b"Starter", b"Professional"), header)


class TestLedgerConsistencyAfterWebhooks:
    @pytest.mark.asyncio
    async def test_replay_invariant_holds(
        self, reconciler, session_factory, provisioned, checkout_completed, event_factory
    ) -> None:
        await reconciler.process_event(checkout_completed("Starter"))
        await reconciler.process_event(event_factory("invoice.paid", _invoice("in_a")))
        await reconciler.process_event(checkout_completed("Professional", session_id="cs_test_2"))

        async with session_factory() as session:
            report = await CreditLedger(session, TENANT).verify()
        assert report["valid"] is True
        assert report["stored_balance"] == 700
