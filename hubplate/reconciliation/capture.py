"""
Payment Capture Orchestrator

Synchronous capture entry points:

    terminal_capture  card-present intent for a Terminal reader. Records the
                      intent id only; the payment status follows the
                      webhook, because card-present capture can still fail
                      after the reader gets its client secret.
    manual_charge     create-and-confirm against a stored payment method.
                      A succeeded intent moves the order to PAID right away
                      through the state machine; the webhook that follows
                      is then a harmless PAID -> PAID repeat.
    pay_at_table      customer-side intent confirmed from the guest's phone or
                      the online payment page. Like terminal_capture it only
                      records the intent id and waits for the webhook.

The charge amount always comes from the stored order. A tip stored on the
order is already part of its total; a request may repeat that tip but not
change it. Only an order with no stored tip takes a tip from the request,
charged on top of the total. A client-supplied amount is only checked
against the stored total, never forwarded.

No database transaction is held open across the processor call: the order
is read and the read transaction ended before the network round trip.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from hubplate.core.config import Settings
from hubplate.core.exceptions import (
    AccountNotConnectedError,
    AmountMismatchError,
    CaptureFailedError,
    OrderNotFoundError,
    OrderNotPayableError,
    PersistenceError,
)
from hubplate.models import Location, Order, PaymentStatus
from hubplate.reconciliation.state_machine import OrderStateMachine, TransitionOutcome
from hubplate.services.payment.base import BasePaymentService, ConnectionTokenResult, PaymentResult

logger = logging.getLogger(__name__)

TERMINAL_PAYMENT = "terminal_payment"
MANUAL_POS_CHARGE = "manual_pos_charge"
PAY_AT_TABLE = "pay_at_table"

_CENT = Decimal("1")


def to_cents(amount: Decimal) -> int:
    """Convert a Decimal currency amount to integer cents (half-up)."""
    return int((Decimal(amount) * 100).quantize(_CENT, rounding=ROUND_HALF_UP))


def calculate_platform_fee(amount_cents: int, rate: Decimal) -> int:
    """
    Platform application fee on a connected-account charge.

    >>> calculate_platform_fee(2000, Decimal("0.025"))
    50
    """
    return int((Decimal(amount_cents) * rate).quantize(_CENT, rounding=ROUND_HALF_UP))


@dataclass
class CaptureResult:
    """
    Outcome of a capture call.

    Attributes:
        status: Processor intent status
        provider_intent_id: Processor reference
        client_secret: For the Terminal reader (terminal capture only)
        order: Order after the call
    """
    status: str
    provider_intent_id: str
    client_secret: Optional[str] = None
    order: Optional[Order] = None


@dataclass
class _ChargePlan:
    order: Order
    amount_cents: int
    tip: Decimal
    destination_account: Optional[str]
    application_fee_cents: Optional[int]


class PaymentCaptureOrchestrator:
    """
    Runs the synchronous capture flows.

    Attributes:
        payment_service: Mock or Stripe payment service
        state_machine: The single writer of order status
        settings: Currency and platform fee rate
    """

    def __init__(
        self,
        payment_service: BasePaymentService,
        state_machine: OrderStateMachine,
        settings: Settings,
    ):
        self.payment_service = payment_service
        self.state_machine = state_machine
        self.settings = settings

    @staticmethod
    def _resolve_tip(order: Order, tip: Decimal) -> Decimal:
        """Tip carried by the charge; only a tip-less order takes one from the request."""
        tip = Decimal(tip)
        if not order.tip:
            return tip
        if tip and tip != order.tip:
            logger.warning(
                f"Order {order.id}: request tip {tip} does not match stored tip {order.tip}"
            )
            raise AmountMismatchError(
                f"Tip {tip} does not match the tip already on the order ({order.tip})"
            )
        return order.tip

    async def _plan_charge(
        self,
        session: AsyncSession,
        order_id: str,
        amount: Optional[Decimal],
        tip: Decimal,
    ) -> _ChargePlan:
        """
        Read the order and work out what to charge, then end the read.

        Raises:
            OrderNotFoundError: Unknown order
            OrderNotPayableError: Order is already PAID or REFUNDED
            AccountNotConnectedError: Connected account required but not ready
            AmountMismatchError: Client amount differs from the stored total,
                or the tip differs from the one stored on the order
        """
        order = await session.get(Order, order_id, populate_existing=True)
        if order is None:
            raise OrderNotFoundError(order_id)

        if order.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
            raise OrderNotPayableError(
                f"Order {order_id} is already {order.payment_status.value}"
            )

        if amount is not None and Decimal(amount) != order.total:
            logger.warning(
                f"Order {order_id}: client amount {amount} does not match total {order.total}"
            )
            raise AmountMismatchError(
                f"Amount {amount} does not match order total {order.total}"
            )

        location = await session.get(Location, order.location_id)
        destination = location.stripe_account_id if location is not None else None

        if self.settings.require_connected_account and not (destination and location.payouts_enabled):
            raise AccountNotConnectedError(
                f"Location {order.location_id} has no payout-enabled connected account"
            )

        tip = self._resolve_tip(order, tip)
        if order.tip:
            amount_cents = to_cents(order.total)
        else:
            amount_cents = to_cents(order.total + tip)
        fee_cents = None
        if destination:
            fee_cents = calculate_platform_fee(amount_cents, self.settings.platform_fee_rate)

        # End the read transaction before talking to the processor
        await session.commit()

        return _ChargePlan(
            order=order,
            amount_cents=amount_cents,
            tip=tip,
            destination_account=destination,
            application_fee_cents=fee_cents,
        )

    # =========================================================================
    # TERMINAL
    # =========================================================================

    async def terminal_capture(
        self,
        session: AsyncSession,
        order_id: str,
        amount: Optional[Decimal] = None,
        tip: Decimal = Decimal("0"),
    ) -> CaptureResult:
        """
        Create a card-present intent for a Terminal reader.

        Raises:
            CaptureFailedError: The processor refused the intent
            PersistenceError: The intent id could not be recorded
        """
        plan = await self._plan_charge(session, order_id, amount, tip)

        result = await self.payment_service.create_terminal_payment_intent(
            amount_cents=plan.amount_cents,
            currency=self.settings.stripe_currency,
            metadata={
                "order_id": plan.order.id,
                "type": TERMINAL_PAYMENT,
                "tip_amount": str(plan.tip),
            },
            destination_account=plan.destination_account,
            application_fee_cents=plan.application_fee_cents,
        )

        if not result.success:
            raise CaptureFailedError(
                result.error_message or "Payment processor refused the request",
                code=result.error_code,
            )

        logger.info(
            f"Terminal Payment: Order={order_id}, Amount={plan.amount_cents}c, "
            f"Tip={plan.tip}, Intent={result.payment_intent_id}"
        )

        return await self._record_intent(session, plan, result)

    # =========================================================================
    # PAY AT TABLE
    # =========================================================================

    async def pay_at_table(
        self,
        session: AsyncSession,
        order_id: str,
        amount: Optional[Decimal] = None,
        tip: Decimal = Decimal("0"),
    ) -> CaptureResult:
        """
        Create an intent the guest confirms on their own device.

        The client secret goes to the browser; Stripe reports the outcome
        through the webhook, so the payment status is left alone here.

        Raises:
            CaptureFailedError: The processor refused the intent
            PersistenceError: The intent id could not be recorded
        """
        plan = await self._plan_charge(session, order_id, amount, tip)

        result = await self.payment_service.create_payment_intent(
            amount_cents=plan.amount_cents,
            currency=self.settings.stripe_currency,
            metadata={
                "order_id": plan.order.id,
                "type": PAY_AT_TABLE,
                "tip_amount": str(plan.tip),
            },
            destination_account=plan.destination_account,
            application_fee_cents=plan.application_fee_cents,
        )

        if not result.success:
            raise CaptureFailedError(
                result.error_message or "Payment processor refused the request",
                code=result.error_code,
            )

        logger.info(
            f"Pay At Table: Order={order_id}, Amount={plan.amount_cents}c, "
            f"Tip={plan.tip}, Intent={result.payment_intent_id}"
        )

        return await self._record_intent(session, plan, result)

    async def _record_intent(
        self,
        session: AsyncSession,
        plan: _ChargePlan,
        result: PaymentResult,
    ) -> CaptureResult:
        """Attach the intent id (set once) without touching payment status."""
        try:
            await self.state_machine.attach_payment_intent(
                session, plan.order.id, result.payment_intent_id
            )
            await session.commit()
            await session.refresh(plan.order)
        except DBAPIError as e:
            await session.rollback()
            raise PersistenceError(f"Could not record intent for order {plan.order.id}") from e

        return CaptureResult(
            status=result.status,
            provider_intent_id=result.payment_intent_id,
            client_secret=result.client_secret,
            order=plan.order,
        )

    # =========================================================================
    # MANUAL CHARGE
    # =========================================================================

    async def manual_charge(
        self,
        session: AsyncSession,
        order_id: str,
        payment_method_id: str,
        amount: Optional[Decimal] = None,
        tip: Decimal = Decimal("0"),
    ) -> CaptureResult:
        """
        Charge a stored payment method and mark the order paid on success.

        Raises:
            CaptureFailedError: Declined, or the intent did not succeed
            PersistenceError: The success could not be recorded
        """
        plan = await self._plan_charge(session, order_id, amount, tip)

        result = await self.payment_service.create_and_confirm_payment_intent(
            amount_cents=plan.amount_cents,
            payment_method_id=payment_method_id,
            currency=self.settings.stripe_currency,
            metadata={
                "order_id": plan.order.id,
                "type": MANUAL_POS_CHARGE,
            },
            destination_account=plan.destination_account,
            application_fee_cents=plan.application_fee_cents,
        )

        if not result.success:
            raise CaptureFailedError(
                result.error_message or "Payment processor refused the charge",
                code=result.error_code,
            )

        if not result.succeeded:
            logger.info(
                f"Manual Charge: Order={order_id} intent {result.payment_intent_id} "
                f"ended in {result.status}, order untouched"
            )
            raise CaptureFailedError(
                f"Payment status: {result.status}",
                intent_status=result.status,
            )

        try:
            await self.state_machine.attach_payment_intent(
                session, plan.order.id, result.payment_intent_id
            )
            change = await self.state_machine.apply(
                session, plan.order.id, payment=PaymentStatus.PAID
            )
            await session.commit()
        except DBAPIError as e:
            await session.rollback()
            raise PersistenceError(f"Could not record charge for order {order_id}") from e

        if change.transition.outcome == TransitionOutcome.REJECTED:
            logger.warning(
                f"Manual Charge: Order={order_id} charged ({result.payment_intent_id}) "
                f"but not marked paid: {change.transition.reason}"
            )

        if change.transition.became_paid:
            self.state_machine.notify_paid(change.order)

        logger.info(
            f"Manual Charge: Order={order_id}, Amount={plan.amount_cents}c, "
            f"Intent={result.payment_intent_id}"
        )

        return CaptureResult(
            status=result.status,
            provider_intent_id=result.payment_intent_id,
            order=change.order,
        )

    # =========================================================================
    # TERMINAL READERS
    # =========================================================================

    async def create_connection_token(self) -> ConnectionTokenResult:
        """Issue a connection token for a Terminal reader."""
        return await self.payment_service.create_connection_token()
