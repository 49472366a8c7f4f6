"""
Order State Machine

Single authority for the two status axes of an Order. Webhooks and
synchronous captures both write through OrderStateMachine.apply, so the
directionality rules hold no matter which path gets there first.

Payment axis:
    UNPAID -> PAID | FAILED
    FAILED -> PAID
    PAID   -> REFUNDED

Fulfillment axis (forward only, CANCELLED from any non-terminal state):
    PENDING < SENT < PREPARING < READY < SERVED < COMPLETED
    COMPLETED and CANCELLED are terminal

Proposing the current status again is UNCHANGED, not REJECTED: a
PAID -> PAID repeat (manual charge followed by its webhook) is harmless.

Persistence is a compare-and-swap UPDATE conditioned on the statuses the
plan was computed from. If another writer moved the order in between, the
order is re-read and the plan recomputed, up to max_attempts times.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hubplate.core.exceptions import OrderNotFoundError
from hubplate.models import FulfillmentStatus, Order, OrderType, PaymentStatus

logger = logging.getLogger(__name__)


ALLOWED_PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.UNPAID: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PAID}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}

FULFILLMENT_SEQUENCE = (
    FulfillmentStatus.PENDING,
    FulfillmentStatus.SENT,
    FulfillmentStatus.PREPARING,
    FulfillmentStatus.READY,
    FulfillmentStatus.SERVED,
    FulfillmentStatus.COMPLETED,
)

TERMINAL_FULFILLMENT = frozenset({FulfillmentStatus.COMPLETED, FulfillmentStatus.CANCELLED})

PaidListener = Callable[[Order], Any]


class TransitionOutcome(str, enum.Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    REJECTED = "rejected"


@dataclass
class Transition:
    """
    A planned change to one order.

    Attributes:
        outcome: APPLIED, UNCHANGED or REJECTED
        changes: Column values to write (empty unless APPLIED)
        reason: Why a transition was rejected
        became_paid: The order enters PAID with this change
    """
    outcome: TransitionOutcome
    changes: dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    became_paid: bool = False

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED


@dataclass
class StateChange:
    """Result of OrderStateMachine.apply: the transition and the order after it."""
    transition: Transition
    order: Order


def payment_transition_allowed(current: PaymentStatus, proposed: PaymentStatus) -> bool:
    return proposed in ALLOWED_PAYMENT_TRANSITIONS[current]


def fulfillment_transition_allowed(
    current: FulfillmentStatus,
    proposed: FulfillmentStatus,
) -> bool:
    if current in TERMINAL_FULFILLMENT:
        return False
    if proposed == FulfillmentStatus.CANCELLED:
        return True
    return FULFILLMENT_SEQUENCE.index(proposed) > FULFILLMENT_SEQUENCE.index(current)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStateMachine:
    """
    Plans and persists order status transitions.

    Attributes:
        max_attempts: Compare-and-swap attempts before giving up
    """

    def __init__(
        self,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.max_attempts = max_attempts
        self._clock = clock
        self._paid_listeners: list[PaidListener] = []

    # =========================================================================
    # PLANNING (pure)
    # =========================================================================

    def plan(
        self,
        order: Order,
        payment: Optional[PaymentStatus] = None,
        fulfillment: Optional[FulfillmentStatus] = None,
    ) -> Transition:
        """
        Decide what proposing `payment` and/or `fulfillment` does to `order`.

        Both axes must be acceptable; if either is forbidden the whole
        transition is rejected and nothing is written.
        """
        now = self._clock()
        changes: dict[str, Any] = {}
        became_paid = False

        if payment is not None and payment != order.payment_status:
            if not payment_transition_allowed(order.payment_status, payment):
                return Transition(
                    outcome=TransitionOutcome.REJECTED,
                    reason=f"payment {order.payment_status.value} -> {payment.value} not allowed",
                )
            changes["payment_status"] = payment
            if payment == PaymentStatus.PAID:
                became_paid = True
                if order.paid_at is None:
                    changes["paid_at"] = now

        if fulfillment is not None and fulfillment != order.fulfillment_status:
            if not fulfillment_transition_allowed(order.fulfillment_status, fulfillment):
                return Transition(
                    outcome=TransitionOutcome.REJECTED,
                    reason=(
                        f"fulfillment {order.fulfillment_status.value} -> "
                        f"{fulfillment.value} not allowed"
                    ),
                )
            changes["fulfillment_status"] = fulfillment
            if (
                fulfillment == FulfillmentStatus.COMPLETED
                and order.order_type == OrderType.DELIVERY
                and order.completed_at is None
            ):
                changes["completed_at"] = now

        if not changes:
            return Transition(outcome=TransitionOutcome.UNCHANGED)

        return Transition(
            outcome=TransitionOutcome.APPLIED,
            changes=changes,
            became_paid=became_paid,
        )

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    async def load(self, session: AsyncSession, order_id: str) -> Order:
        """
        Read an order for update, bypassing any stale identity-map copy.

        Raises:
            OrderNotFoundError: If no such order exists
        """
        result = await session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def apply(
        self,
        session: AsyncSession,
        order_id: str,
        payment: Optional[PaymentStatus] = None,
        fulfillment: Optional[FulfillmentStatus] = None,
    ) -> StateChange:
        """
        Plan and write a transition inside the caller's transaction.

        Does not commit. A REJECTED or UNCHANGED transition writes nothing.

        Raises:
            OrderNotFoundError: If no such order exists
        """
        order = await self.load(session, order_id)

        for attempt in range(1, self.max_attempts + 1):
            transition = self.plan(order, payment=payment, fulfillment=fulfillment)

            if not transition.applied:
                if transition.outcome == TransitionOutcome.REJECTED:
                    logger.info(f"Order {order_id}: ignored stale transition ({transition.reason})")
                return StateChange(transition=transition, order=order)

            result = await session.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.payment_status == order.payment_status,
                    Order.fulfillment_status == order.fulfillment_status,
                )
                .values(**transition.changes, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 1:
                await session.refresh(order)
                logger.info(
                    f"Order {order_id}: "
                    f"{', '.join(f'{k}={_display(v)}' for k, v in transition.changes.items())}"
                )
                return StateChange(transition=transition, order=order)

            logger.debug(f"Order {order_id}: concurrent update, re-planning (attempt {attempt})")
            order = await self.load(session, order_id)

        logger.warning(f"Order {order_id}: gave up after {self.max_attempts} concurrent updates")
        return StateChange(
            transition=Transition(
                outcome=TransitionOutcome.REJECTED,
                reason="too many concurrent updates",
            ),
            order=order,
        )

    async def attach_payment_intent(
        self,
        session: AsyncSession,
        order_id: str,
        payment_intent_id: str,
    ) -> bool:
        """
        Record the processor reference unless one is already set.

        Returns:
            True if this call set it
        """
        result = await session.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_intent_id.is_(None))
            .values(payment_intent_id=payment_intent_id, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return True
        logger.info(f"Order {order_id}: payment intent already recorded, keeping it ({payment_intent_id} not stored)")
        return False

    async def attach_delivery(
        self,
        session: AsyncSession,
        order_id: str,
        delivery_id: str,
    ) -> bool:
        """
        Record the courier reference unless one is already set.

        Returns:
            True if this call set it
        """
        result = await session.execute(
            update(Order)
            .where(Order.id == order_id, Order.delivery_id.is_(None))
            .values(delivery_id=delivery_id, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # =========================================================================
    # BECAME-PAID HOOK
    # =========================================================================

    def on_paid(self, listener: PaidListener) -> None:
        """Register a collaborator called once per order entering PAID."""
        self._paid_listeners.append(listener)

    def notify_paid(self, order: Order) -> None:
        """
        Invoke paid listeners. Call only after the transition is committed.

        A failing listener is logged and does not stop the others; the
        order is already durably paid at this point.
        """
        for listener in self._paid_listeners:
            try:
                listener(order)
            except Exception:
                # Redeliveries of the paying event are ALREADY_APPLIED, so this
                # notification is not attempted again
                logger.exception(f"Paid listener failed for order {order.id}, notification dropped")


def _display(value: Any) -> str:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)
