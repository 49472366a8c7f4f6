"""Tests for the webhook reconciler: ordering, duplication and policy."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import patch

import pytest
from conftest import (
    account_payload,
    sign_stripe,
    sign_uber,
    stripe_payload,
    uber_payload,
)
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from hubplate.core.config import SignaturePolicy
from hubplate.core.exceptions import MalformedEventError, PersistenceError, SignatureRejectedError
from hubplate.models import (
    AppliedEvent,
    FulfillmentStatus,
    Location,
    OrderType,
    PaymentStatus,
)
from hubplate.reconciliation.reconciler import WebhookOutcome, WebhookReconciler


@pytest.fixture()
def reconciler(state_machine, settings) -> WebhookReconciler:
    return WebhookReconciler(state_machine, settings)


async def _stripe(reconciler, session, body: bytes):
    return await reconciler.handle_payment_webhook(session, body, sign_stripe(body))


async def _uber(reconciler, session, body: bytes):
    return await reconciler.handle_courier_webhook(session, body, sign_uber(body))


# ── Payment webhooks ──────────────────────────────────────────────────────


class TestPaymentWebhooks:

    async def test_success_marks_paid_and_notifies_once(
        self, reconciler, session, make_order, fetch_order, paid_recorder
    ):
        order_id = await make_order()
        body = stripe_payload("payment_intent.succeeded", order_id, intent_id="pi_abc")

        result = await _stripe(reconciler, session, body)

        assert result.outcome == WebhookOutcome.APPLIED
        order = await fetch_order(order_id)
        assert order.payment_status == PaymentStatus.PAID
        assert order.paid_at is not None
        assert order.payment_intent_id == "pi_abc"
        assert paid_recorder.order_ids == [order_id]

    async def test_redelivered_success_changes_nothing(
        self, reconciler, session, make_order, fetch_order, paid_recorder
    ):
        order_id = await make_order()
        body = stripe_payload("payment_intent.succeeded", order_id, event_id="evt_once")

        first = await _stripe(reconciler, session, body)
        paid_at = (await fetch_order(order_id)).paid_at
        second = await _stripe(reconciler, session, body)

        assert first.outcome == WebhookOutcome.APPLIED
        assert second.outcome == WebhookOutcome.ALREADY_APPLIED
        assert (await fetch_order(order_id)).paid_at == paid_at
        assert paid_recorder.order_ids == [order_id]

    async def test_late_failure_never_unpays(self, reconciler, session, make_order, fetch_order):
        """succeeded then payment_failed (delivered out of order) stays PAID."""
        order_id = await make_order()

        await _stripe(reconciler, session, stripe_payload("payment_intent.succeeded", order_id))
        result = await _stripe(reconciler, session, stripe_payload("payment_intent.payment_failed", order_id))

        assert result.outcome == WebhookOutcome.IGNORED
        assert (await fetch_order(order_id)).payment_status == PaymentStatus.PAID

    async def test_failure_then_success_recovers(self, reconciler, session, make_order, fetch_order):
        order_id = await make_order()

        await _stripe(reconciler, session, stripe_payload("payment_intent.payment_failed", order_id))
        assert (await fetch_order(order_id)).payment_status == PaymentStatus.FAILED

        await _stripe(reconciler, session, stripe_payload("payment_intent.succeeded", order_id))
        assert (await fetch_order(order_id)).payment_status == PaymentStatus.PAID

    async def test_existing_intent_id_is_kept(self, reconciler, session, make_order, fetch_order):
        order_id = await make_order(payment_intent_id="pi_from_terminal")

        await _stripe(
            reconciler, session, stripe_payload("payment_intent.succeeded", order_id, intent_id="pi_other")
        )

        assert (await fetch_order(order_id)).payment_intent_id == "pi_from_terminal"

    async def test_second_success_event_is_unchanged(
        self, reconciler, session, make_order, paid_recorder
    ):
        """Distinct event ids for the same payment: PAID -> PAID is a no-op."""
        order_id = await make_order()

        await _stripe(reconciler, session, stripe_payload("payment_intent.succeeded", order_id))
        result = await _stripe(reconciler, session, stripe_payload("payment_intent.succeeded", order_id))

        assert result.outcome == WebhookOutcome.UNCHANGED
        assert paid_recorder.order_ids == [order_id]

    async def test_no_order_metadata_is_acknowledged_without_ledger_row(
        self, reconciler, session, session_factory
    ):
        result = await _stripe(reconciler, session, stripe_payload("payment_intent.succeeded"))

        assert result.outcome == WebhookOutcome.UNMATCHED
        async with session_factory() as check:
            assert await check.scalar(select(func.count()).select_from(AppliedEvent)) == 0

    async def test_unknown_order_is_acknowledged(self, reconciler, session):
        body = stripe_payload("payment_intent.succeeded", "order-that-does-not-exist")
        result = await _stripe(reconciler, session, body)
        assert result.outcome == WebhookOutcome.UNMATCHED

    async def test_unhandled_type_is_unrecognized(self, reconciler, session):
        body = stripe_payload("charge.refunded", "any")
        result = await _stripe(reconciler, session, body)
        assert result.outcome == WebhookOutcome.UNRECOGNIZED

    async def test_bad_signature_is_rejected(self, reconciler, session, make_order, fetch_order):
        order_id = await make_order()
        body = stripe_payload("payment_intent.succeeded", order_id)

        with pytest.raises(SignatureRejectedError):
            await reconciler.handle_payment_webhook(session, body, sign_stripe(body, secret="whsec_wrong"))

        assert (await fetch_order(order_id)).payment_status == PaymentStatus.UNPAID

    async def test_bad_signature_acknowledged_under_acknowledge_policy(
        self, state_machine, settings, session
    ):
        settings.payment_signature_policy = SignaturePolicy.ACKNOWLEDGE
        reconciler = WebhookReconciler(state_machine, settings)

        result = await reconciler.handle_payment_webhook(session, b"{}", "t=1,v1=bad")
        assert result.outcome == WebhookOutcome.SIGNATURE_INVALID

    async def test_signed_non_json_is_malformed(self, reconciler, session):
        body = b"not json"
        with pytest.raises(MalformedEventError):
            await _stripe(reconciler, session, body)

    async def test_signed_bad_envelope_is_malformed(self, reconciler, session):
        body = b'{"type": "payment_intent.succeeded"}'
        with pytest.raises(MalformedEventError):
            await _stripe(reconciler, session, body)

    async def test_audit_line(self, reconciler, session, make_order, caplog):
        order_id = await make_order()
        body = stripe_payload("payment_intent.succeeded", order_id, event_id="evt_audit")

        with caplog.at_level(logging.INFO, logger="hubplate.reconciliation.reconciler"):
            await _stripe(reconciler, session, body)

        audit = [r.getMessage() for r in caplog.records if r.getMessage().startswith("WEBHOOK_AUDIT")]
        assert audit == [
            "WEBHOOK_AUDIT provider=stripe event=payment_succeeded id=evt_audit outcome=applied"
        ]


# ── Account updates ───────────────────────────────────────────────────────


class TestAccountUpdates:

    async def test_payouts_enabled_follows_account(self, reconciler, session, session_factory, make_location):
        location_id = await make_location(stripe_account_id="acct_123")

        result = await _stripe(reconciler, session, account_payload("acct_123", True, True))
        assert result.outcome == WebhookOutcome.APPLIED
        async with session_factory() as check:
            assert (await check.get(Location, location_id)).payouts_enabled is True

        await _stripe(reconciler, session, account_payload("acct_123", True, False))
        async with session_factory() as check:
            assert (await check.get(Location, location_id)).payouts_enabled is False

    async def test_unknown_account_is_unmatched(self, reconciler, session):
        result = await _stripe(reconciler, session, account_payload("acct_nobody", True, True))
        assert result.outcome == WebhookOutcome.UNMATCHED

    async def test_redelivered_account_event(self, reconciler, session, make_location):
        await make_location(stripe_account_id="acct_dup")
        body = account_payload("acct_dup", True, True, event_id="evt_acct")

        await _stripe(reconciler, session, body)
        result = await _stripe(reconciler, session, body)
        assert result.outcome == WebhookOutcome.ALREADY_APPLIED


# ── Courier webhooks ──────────────────────────────────────────────────────


class TestCourierWebhooks:

    async def test_status_progression(self, reconciler, session, make_order, fetch_order):
        order_id = await make_order(order_type=OrderType.DELIVERY, delivery_id="del_1")

        await _uber(reconciler, session, uber_payload("del_1", "pickup"))
        assert (await fetch_order(order_id)).fulfillment_status == FulfillmentStatus.SENT

        await _uber(reconciler, session, uber_payload("del_1", "COMPLETED"))
        order = await fetch_order(order_id)
        assert order.fulfillment_status == FulfillmentStatus.COMPLETED
        assert order.completed_at is not None

    async def test_completed_then_canceled_stays_completed(
        self, reconciler, session, make_order, fetch_order
    ):
        order_id = await make_order(order_type=OrderType.DELIVERY, delivery_id="del_2")

        await _uber(reconciler, session, uber_payload("del_2", "COMPLETED"))
        result = await _uber(reconciler, session, uber_payload("del_2", "CANCELED"))

        assert result.outcome == WebhookOutcome.IGNORED
        assert (await fetch_order(order_id)).fulfillment_status == FulfillmentStatus.COMPLETED

    async def test_late_in_progress_after_completed(self, reconciler, session, make_order, fetch_order):
        order_id = await make_order(order_type=OrderType.DELIVERY, delivery_id="del_3")

        await _uber(reconciler, session, uber_payload("del_3", "COMPLETED"))
        await _uber(reconciler, session, uber_payload("del_3", "dropoff"))

        assert (await fetch_order(order_id)).fulfillment_status == FulfillmentStatus.COMPLETED

    async def test_unknown_status_is_in_progress(self, reconciler, session, make_order, fetch_order):
        order_id = await make_order(order_type=OrderType.DELIVERY, delivery_id="del_4")

        await _uber(reconciler, session, uber_payload("del_4", "TELEPORTING"))
        assert (await fetch_order(order_id)).fulfillment_status == FulfillmentStatus.SENT

    async def test_repeat_status_is_already_applied(self, reconciler, session, make_order):
        await make_order(order_type=OrderType.DELIVERY, delivery_id="del_5")

        await _uber(reconciler, session, uber_payload("del_5", "pickup"))
        result = await _uber(reconciler, session, uber_payload("del_5", "dropoff"))

        assert result.outcome == WebhookOutcome.ALREADY_APPLIED

    async def test_unknown_delivery_is_unmatched(self, reconciler, session):
        result = await _uber(reconciler, session, uber_payload("del_nobody", "COMPLETED"))
        assert result.outcome == WebhookOutcome.UNMATCHED

    async def test_bad_signature_is_acknowledged(self, reconciler, session, make_order, fetch_order):
        order_id = await make_order(order_type=OrderType.DELIVERY, delivery_id="del_6")
        body = uber_payload("del_6", "COMPLETED")

        result = await reconciler.handle_courier_webhook(session, body, "deadbeef")

        assert result.outcome == WebhookOutcome.SIGNATURE_INVALID
        assert (await fetch_order(order_id)).fulfillment_status == FulfillmentStatus.PENDING

    async def test_bad_signature_rejected_under_reject_policy(self, state_machine, settings, session):
        settings.courier_signature_policy = SignaturePolicy.REJECT
        reconciler = WebhookReconciler(state_machine, settings)

        with pytest.raises(SignatureRejectedError):
            await reconciler.handle_courier_webhook(session, uber_payload("del_x", "COMPLETED"), None)

    async def test_non_json_is_rejected(self, reconciler, session):
        with pytest.raises(MalformedEventError):
            await reconciler.handle_courier_webhook(session, b"<html>", None)

    async def test_missing_delivery_id_is_acknowledged(self, reconciler, session):
        body = b'{"event_type": "event.delivery_status", "meta": {"status": "COMPLETED"}}'
        result = await _uber(reconciler, session, body)
        assert result.outcome == WebhookOutcome.MALFORMED

    async def test_other_event_type_is_unrecognized(self, reconciler, session):
        body = b'{"event_type": "event.courier_update"}'
        result = await _uber(reconciler, session, body)
        assert result.outcome == WebhookOutcome.UNRECOGNIZED

    async def test_lookup_failure_is_persistence_error(self, reconciler, session):
        with patch(
            "hubplate.reconciliation.reconciler.resolve_courier_order",
            side_effect=OperationalError("SELECT", {}, Exception("db down")),
        ):
            with pytest.raises(PersistenceError):
                await _uber(reconciler, session, uber_payload("del_7", "COMPLETED"))


# ── Chaos ─────────────────────────────────────────────────────────────────


async def test_concurrent_storm_converges(state_machine, settings, session_factory, make_order, fetch_order, paid_recorder):
    """Shuffled, duplicated, concurrent deliveries on separate sessions."""
    order_id = await make_order(order_type=OrderType.DELIVERY, delivery_id="del_storm")
    reconciler = WebhookReconciler(state_machine, settings)

    succeeded = stripe_payload("payment_intent.succeeded", order_id, event_id="evt_storm_ok")
    failed = stripe_payload("payment_intent.payment_failed", order_id, event_id="evt_storm_fail")

    async def stripe_delivery(body):
        async with session_factory() as session:
            return await _stripe(reconciler, session, body)

    async def uber_delivery(status):
        async with session_factory() as session:
            return await _uber(reconciler, session, uber_payload("del_storm", status))

    # The failure is applied before the burst so the burst's success has to win
    await stripe_delivery(failed)

    await asyncio.gather(
        stripe_delivery(succeeded),
        stripe_delivery(succeeded),
        stripe_delivery(failed),
        uber_delivery("pickup"),
        uber_delivery("COMPLETED"),
        uber_delivery("COMPLETED"),
    )

    order = await fetch_order(order_id)
    assert order.payment_status == PaymentStatus.PAID
    assert order.fulfillment_status == FulfillmentStatus.COMPLETED
    assert paid_recorder.order_ids == [order_id]
