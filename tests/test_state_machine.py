"""Tests for the order state machine: planning rules and CAS persistence."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import update

from hubplate.core.exceptions import OrderNotFoundError
from hubplate.models import FulfillmentStatus, Order, OrderType, PaymentStatus
from hubplate.reconciliation.state_machine import (
    FULFILLMENT_SEQUENCE,
    OrderStateMachine,
    TransitionOutcome,
    fulfillment_transition_allowed,
    payment_transition_allowed,
)

FIXED_NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


def _order(**kwargs) -> Order:
    """Unsaved order for planning tests."""
    defaults = dict(
        order_type=OrderType.DINE_IN,
        payment_status=PaymentStatus.UNPAID,
        fulfillment_status=FulfillmentStatus.PENDING,
        paid_at=None,
        completed_at=None,
    )
    defaults.update(kwargs)
    return Order(**defaults)


@pytest.fixture()
def machine() -> OrderStateMachine:
    return OrderStateMachine(clock=lambda: FIXED_NOW)


# ── Transition tables ─────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "current, proposed, allowed",
    [
        (PaymentStatus.UNPAID, PaymentStatus.PAID, True),
        (PaymentStatus.UNPAID, PaymentStatus.FAILED, True),
        (PaymentStatus.FAILED, PaymentStatus.PAID, True),
        (PaymentStatus.PAID, PaymentStatus.REFUNDED, True),
        (PaymentStatus.PAID, PaymentStatus.FAILED, False),
        (PaymentStatus.PAID, PaymentStatus.UNPAID, False),
        (PaymentStatus.FAILED, PaymentStatus.UNPAID, False),
        (PaymentStatus.REFUNDED, PaymentStatus.PAID, False),
        (PaymentStatus.UNPAID, PaymentStatus.REFUNDED, False),
    ],
)
def test_payment_transitions(current, proposed, allowed):
    assert payment_transition_allowed(current, proposed) is allowed


def test_fulfillment_forward_only():
    for i, current in enumerate(FULFILLMENT_SEQUENCE[:-1]):
        for j, proposed in enumerate(FULFILLMENT_SEQUENCE):
            assert fulfillment_transition_allowed(current, proposed) is (j > i)


def test_cancel_from_any_non_terminal():
    for current in FULFILLMENT_SEQUENCE[:-1]:
        assert fulfillment_transition_allowed(current, FulfillmentStatus.CANCELLED)


@pytest.mark.parametrize("terminal", [FulfillmentStatus.COMPLETED, FulfillmentStatus.CANCELLED])
def test_terminal_fulfillment_is_final(terminal):
    for proposed in FulfillmentStatus:
        assert not fulfillment_transition_allowed(terminal, proposed)


# ── Planning ──────────────────────────────────────────────────────────────


class TestPlan:

    def test_unpaid_to_paid_stamps_paid_at(self, machine):
        transition = machine.plan(_order(), payment=PaymentStatus.PAID)
        assert transition.outcome == TransitionOutcome.APPLIED
        assert transition.became_paid
        assert transition.changes == {"payment_status": PaymentStatus.PAID, "paid_at": FIXED_NOW}

    def test_failed_to_paid_keeps_existing_paid_at(self, machine):
        earlier = datetime(2026, 1, 1, tzinfo=timezone.utc)
        order = _order(payment_status=PaymentStatus.FAILED, paid_at=earlier)
        transition = machine.plan(order, payment=PaymentStatus.PAID)
        assert transition.applied
        assert "paid_at" not in transition.changes

    def test_paid_to_paid_is_unchanged(self, machine):
        transition = machine.plan(_order(payment_status=PaymentStatus.PAID), payment=PaymentStatus.PAID)
        assert transition.outcome == TransitionOutcome.UNCHANGED
        assert not transition.became_paid

    def test_late_failure_after_paid_is_rejected(self, machine):
        transition = machine.plan(
            _order(payment_status=PaymentStatus.PAID),
            payment=PaymentStatus.FAILED,
        )
        assert transition.outcome == TransitionOutcome.REJECTED
        assert transition.changes == {}
        assert "paid -> failed" in transition.reason

    def test_completed_delivery_stamps_completed_at(self, machine):
        order = _order(order_type=OrderType.DELIVERY, fulfillment_status=FulfillmentStatus.SENT)
        transition = machine.plan(order, fulfillment=FulfillmentStatus.COMPLETED)
        assert transition.changes["completed_at"] == FIXED_NOW

    def test_completed_dine_in_does_not_stamp_completed_at(self, machine):
        order = _order(fulfillment_status=FulfillmentStatus.SERVED)
        transition = machine.plan(order, fulfillment=FulfillmentStatus.COMPLETED)
        assert transition.applied
        assert "completed_at" not in transition.changes

    def test_regression_rejected(self, machine):
        order = _order(fulfillment_status=FulfillmentStatus.READY)
        transition = machine.plan(order, fulfillment=FulfillmentStatus.SENT)
        assert transition.outcome == TransitionOutcome.REJECTED

    def test_one_bad_axis_rejects_both(self, machine):
        order = _order(
            payment_status=PaymentStatus.PAID,
            fulfillment_status=FulfillmentStatus.PENDING,
        )
        transition = machine.plan(
            order,
            payment=PaymentStatus.FAILED,
            fulfillment=FulfillmentStatus.SENT,
        )
        assert transition.outcome == TransitionOutcome.REJECTED
        assert transition.changes == {}

    def test_nothing_proposed_is_unchanged(self, machine):
        assert machine.plan(_order()).outcome == TransitionOutcome.UNCHANGED


# ── Persistence ───────────────────────────────────────────────────────────


class TestApply:

    async def test_apply_writes_and_does_not_commit(self, session, make_order, fetch_order, machine):
        order_id = await make_order()

        change = await machine.apply(session, order_id, payment=PaymentStatus.PAID)
        assert change.transition.applied
        assert change.order.payment_status == PaymentStatus.PAID
        assert change.order.paid_at is not None

        # Nothing is visible elsewhere until the caller commits
        await session.rollback()
        assert (await fetch_order(order_id)).payment_status == PaymentStatus.UNPAID

    async def test_apply_commit(self, session, make_order, fetch_order, machine):
        order_id = await make_order(order_type=OrderType.DELIVERY)

        await machine.apply(session, order_id, fulfillment=FulfillmentStatus.COMPLETED)
        await session.commit()

        stored = await fetch_order(order_id)
        assert stored.fulfillment_status == FulfillmentStatus.COMPLETED
        assert stored.completed_at is not None

    async def test_rejected_writes_nothing(self, session, make_order, fetch_order, machine):
        order_id = await make_order(fulfillment_status=FulfillmentStatus.CANCELLED)

        change = await machine.apply(session, order_id, fulfillment=FulfillmentStatus.COMPLETED)
        await session.commit()

        assert change.transition.outcome == TransitionOutcome.REJECTED
        assert (await fetch_order(order_id)).fulfillment_status == FulfillmentStatus.CANCELLED

    async def test_unknown_order(self, session, machine):
        with pytest.raises(OrderNotFoundError):
            await machine.apply(session, "no-such-order", payment=PaymentStatus.PAID)

    async def test_replans_after_concurrent_write(self, session, session_factory, make_order, machine):
        """A CAS miss re-reads the order and plans again from the new state."""
        order_id = await make_order(fulfillment_status=FulfillmentStatus.PENDING)
        original_load = machine.load
        calls = 0

        async def racing_load(s, oid):
            nonlocal calls
            calls += 1
            order = await original_load(s, oid)
            if calls == 1:
                # Another writer completes the order right after our read
                async with session_factory() as other:
                    await other.execute(
                        update(Order)
                        .where(Order.id == oid)
                        .values(fulfillment_status=FulfillmentStatus.READY)
                    )
                    await other.commit()
            return order

        machine.load = racing_load

        change = await machine.apply(session, order_id, fulfillment=FulfillmentStatus.SENT)
        await session.commit()

        assert calls == 2
        assert change.transition.outcome == TransitionOutcome.REJECTED
        assert change.order.fulfillment_status == FulfillmentStatus.READY


class TestAttachReferences:

    async def test_payment_intent_set_once(self, session, make_order, fetch_order, machine):
        order_id = await make_order()

        assert await machine.attach_payment_intent(session, order_id, "pi_first") is True
        assert await machine.attach_payment_intent(session, order_id, "pi_second") is False
        await session.commit()

        assert (await fetch_order(order_id)).payment_intent_id == "pi_first"

    async def test_delivery_set_once(self, session, make_order, fetch_order, machine):
        order_id = await make_order(order_type=OrderType.DELIVERY)

        assert await machine.attach_delivery(session, order_id, "del_first") is True
        assert await machine.attach_delivery(session, order_id, "del_second") is False
        await session.commit()

        assert (await fetch_order(order_id)).delivery_id == "del_first"


# ── Paid listeners ────────────────────────────────────────────────────────


def test_failing_listener_does_not_stop_others(machine, caplog):
    seen = []

    def broken(order):
        raise RuntimeError("collaborator down")

    machine.on_paid(broken)
    machine.on_paid(lambda order: seen.append(order.id))

    machine.notify_paid(_order(id="order-1"))
    assert seen == ["order-1"]
    assert "order-1, notification dropped" in caplog.text
