"""
Webhook Reconciler

Glue between the HTTP endpoints and the reconciliation core:

    raw body -> signature check -> normalize -> apply once -> state machine

The two providers differ only in policy, not in mechanics:

    Stripe  verify first, a bad signature is rejected (400), a body that is
            not a valid event is rejected (400).
    Uber    a body that is not JSON is rejected (400). Anything else is
            acknowledged: a bad signature, an unknown delivery or a broken
            meta block is logged and dropped, because Uber disables
            endpoints that keep answering non-2xx.

Unmatched references and stale transitions are outcomes, not errors. Every
webhook ends with exactly one WEBHOOK_AUDIT log line.
"""

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from hubplate.core.config import Settings, SignaturePolicy
from hubplate.core.exceptions import (
    MalformedEventError,
    OrderNotFoundError,
    PersistenceError,
    SignatureRejectedError,
)
from hubplate.models import Location, Order, PaymentStatus
from hubplate.reconciliation.events import (
    COURIER_FULFILLMENT_TARGETS,
    CourierStatus,
    EventKind,
    NormalizedEvent,
    normalize_courier_event,
    normalize_payment_event,
    resolve_courier_order,
)
from hubplate.reconciliation.ledger import ApplyOnceStatus, IdempotencyGuard
from hubplate.reconciliation.signatures import (
    SignatureResult,
    verify_courier_signature,
    verify_payment_signature,
)
from hubplate.reconciliation.state_machine import (
    OrderStateMachine,
    StateChange,
    TransitionOutcome,
)

logger = logging.getLogger(__name__)


class WebhookOutcome(str, enum.Enum):
    """What happened to one webhook delivery."""
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"
    ALREADY_APPLIED = "already_applied"
    UNMATCHED = "unmatched"
    UNRECOGNIZED = "unrecognized"
    SIGNATURE_INVALID = "signature_invalid"
    MALFORMED = "malformed"


@dataclass
class ReconcileResult:
    """
    Result of handling one webhook.

    Attributes:
        outcome: Final outcome, also written to the audit log
        event: The normalized event, when normalization got that far
        order: The order after the change, when one was applied
    """
    outcome: WebhookOutcome
    event: Optional[NormalizedEvent] = None
    order: Optional[Order] = None


_TRANSITION_LABELS = {
    TransitionOutcome.APPLIED: WebhookOutcome.APPLIED.value,
    TransitionOutcome.UNCHANGED: WebhookOutcome.UNCHANGED.value,
    TransitionOutcome.REJECTED: WebhookOutcome.IGNORED.value,
}


def _audit(provider: str, kind: str, event_id: str, outcome: WebhookOutcome) -> None:
    logger.info(
        f"WEBHOOK_AUDIT provider={provider} event={kind} id={event_id} outcome={outcome.value}"
    )


class WebhookReconciler:
    """
    Applies provider webhooks to orders.

    Attributes:
        state_machine: The single writer of order status
        settings: Secrets and per-provider signature policy
        guard: Idempotency ledger access
    """

    def __init__(
        self,
        state_machine: OrderStateMachine,
        settings: Settings,
        guard: Optional[IdempotencyGuard] = None,
    ):
        self.state_machine = state_machine
        self.settings = settings
        self.guard = guard or IdempotencyGuard()

    # =========================================================================
    # STRIPE
    # =========================================================================

    async def handle_payment_webhook(
        self,
        session: AsyncSession,
        raw_body: bytes,
        signature: Optional[str],
    ) -> ReconcileResult:
        """
        Verify, normalize and apply a Stripe webhook.

        Raises:
            SignatureRejectedError: Bad signature under the REJECT policy
            MalformedEventError: Body is not a valid Stripe event
            PersistenceError: Database failure while applying
        """
        provider = "stripe"

        verdict = verify_payment_signature(
            raw_body,
            signature,
            self.settings.stripe_webhook_secret,
            tolerance=self.settings.stripe_signature_tolerance,
        )
        if verdict == SignatureResult.INVALID:
            return self._signature_failed(provider, self.settings.payment_signature_policy)

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            _audit(provider, "unknown", "unknown", WebhookOutcome.MALFORMED)
            raise MalformedEventError("Stripe webhook body is not JSON") from e

        try:
            event = normalize_payment_event(payload)
        except MalformedEventError:
            _audit(provider, "unknown", "unknown", WebhookOutcome.MALFORMED)
            raise

        if event is None:
            _audit(provider, _event_type(payload), _event_id(payload), WebhookOutcome.UNRECOGNIZED)
            return ReconcileResult(outcome=WebhookOutcome.UNRECOGNIZED)

        result = await self.reconcile(session, event)
        _audit(provider, event.kind.value, event.external_event_id, result.outcome)
        return result

    # =========================================================================
    # UBER DIRECT
    # =========================================================================

    async def handle_courier_webhook(
        self,
        session: AsyncSession,
        raw_body: bytes,
        signature: Optional[str],
    ) -> ReconcileResult:
        """
        Verify, normalize and apply an Uber Direct webhook.

        Raises:
            MalformedEventError: Body is not JSON at all
            SignatureRejectedError: Bad signature, only under the REJECT policy
            PersistenceError: Database failure while applying
        """
        provider = "uber"

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            _audit(provider, "unknown", "unknown", WebhookOutcome.MALFORMED)
            raise MalformedEventError("Uber webhook body is not JSON") from e

        verdict = verify_courier_signature(
            raw_body,
            signature,
            self.settings.uber_webhook_signing_key,
        )
        if verdict == SignatureResult.INVALID:
            return self._signature_failed(provider, self.settings.courier_signature_policy)

        try:
            event = normalize_courier_event(payload)
        except MalformedEventError as e:
            logger.warning(f"Uber: Dropping malformed event - {e}")
            _audit(provider, _event_type(payload, "event_type"), "unknown", WebhookOutcome.MALFORMED)
            return ReconcileResult(outcome=WebhookOutcome.MALFORMED)

        if event is None:
            _audit(provider, _event_type(payload, "event_type"), "unknown", WebhookOutcome.UNRECOGNIZED)
            return ReconcileResult(outcome=WebhookOutcome.UNRECOGNIZED)

        try:
            event = await resolve_courier_order(session, event)
        except DBAPIError as e:
            await session.rollback()
            raise PersistenceError(f"Could not look up delivery {event.provider_ref}") from e

        result = await self.reconcile(session, event)
        _audit(provider, event.kind.value, event.external_event_id, result.outcome)
        return result

    # =========================================================================
    # APPLY
    # =========================================================================

    async def reconcile(self, session: AsyncSession, event: NormalizedEvent) -> ReconcileResult:
        """
        Apply one normalized event exactly once and commit.

        Events that could not be tied to an order are acknowledged without a
        ledger row. Paid listeners run after the commit.
        """
        if event.kind == EventKind.ACCOUNT_UPDATED:
            return await self._apply_account_update(session, event)

        if event.order_ref is None:
            logger.info(
                f"{event.source.value}: {event.kind.value} {event.provider_ref} "
                f"matches no order, acknowledging"
            )
            return ReconcileResult(outcome=WebhookOutcome.UNMATCHED, event=event)

        change: Optional[StateChange] = None

        async def mutation() -> str:
            nonlocal change
            try:
                change = await self._apply_order_event(session, event)
            except OrderNotFoundError:
                logger.info(f"{event.source.value}: order {event.order_ref} not found, acknowledging")
                return WebhookOutcome.UNMATCHED.value
            return _TRANSITION_LABELS[change.transition.outcome]

        applied = await self.guard.apply_once(
            session,
            event.source,
            event.external_event_id,
            mutation,
            kind=event.kind.value,
            order_id=event.order_ref,
        )

        if applied.status == ApplyOnceStatus.ALREADY_APPLIED:
            return ReconcileResult(outcome=WebhookOutcome.ALREADY_APPLIED, event=event)

        if change is not None and change.transition.became_paid:
            self.state_machine.notify_paid(change.order)

        return ReconcileResult(
            outcome=WebhookOutcome(applied.outcome),
            event=event,
            order=change.order if change is not None else None,
        )

    async def _apply_order_event(
        self,
        session: AsyncSession,
        event: NormalizedEvent,
    ) -> StateChange:
        if event.kind == EventKind.PAYMENT_SUCCEEDED:
            change = await self.state_machine.apply(
                session, event.order_ref, payment=PaymentStatus.PAID
            )
            if (
                change.transition.outcome != TransitionOutcome.REJECTED
                and event.provider_ref
                and change.order.payment_intent_id is None
            ):
                if await self.state_machine.attach_payment_intent(
                    session, event.order_ref, event.provider_ref
                ):
                    await session.refresh(change.order)
            return change

        if event.kind == EventKind.PAYMENT_FAILED:
            return await self.state_machine.apply(
                session, event.order_ref, payment=PaymentStatus.FAILED
            )

        target = COURIER_FULFILLMENT_TARGETS[CourierStatus(event.status_value)]
        return await self.state_machine.apply(session, event.order_ref, fulfillment=target)

    async def _apply_account_update(
        self,
        session: AsyncSession,
        event: NormalizedEvent,
    ) -> ReconcileResult:
        enabled = event.status_value == "enabled"

        async def mutation() -> str:
            result = await session.execute(
                update(Location)
                .where(Location.stripe_account_id == event.provider_ref)
                .values(payouts_enabled=enabled)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.info(f"Stripe: No location for account {event.provider_ref}")
                return WebhookOutcome.UNMATCHED.value
            logger.info(f"Stripe: Account {event.provider_ref} payouts_enabled={enabled}")
            return WebhookOutcome.APPLIED.value

        applied = await self.guard.apply_once(
            session,
            event.source,
            event.external_event_id,
            mutation,
            kind=event.kind.value,
        )

        if applied.status == ApplyOnceStatus.ALREADY_APPLIED:
            return ReconcileResult(outcome=WebhookOutcome.ALREADY_APPLIED, event=event)
        return ReconcileResult(outcome=WebhookOutcome(applied.outcome), event=event)

    def _signature_failed(self, provider: str, policy: SignaturePolicy) -> ReconcileResult:
        _audit(provider, "unknown", "unknown", WebhookOutcome.SIGNATURE_INVALID)
        if policy == SignaturePolicy.REJECT:
            raise SignatureRejectedError(provider)
        return ReconcileResult(outcome=WebhookOutcome.SIGNATURE_INVALID)


def _event_type(payload: Any, key: str = "type") -> str:
    if isinstance(payload, dict):
        return str(payload.get(key) or "unknown")
    return "unknown"


def _event_id(payload: Any) -> str:
    if isinstance(payload, dict):
        return str(payload.get("id") or "unknown")
    return "unknown"
