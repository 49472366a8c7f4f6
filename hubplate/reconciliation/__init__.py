"""
Reconciliation core.

Keeps an order's payment and fulfillment status consistent while Stripe
webhooks, Uber Direct webhooks and POS captures race to update it.
"""

from hubplate.reconciliation.capture import CaptureResult, PaymentCaptureOrchestrator
from hubplate.reconciliation.dispatch import DeliveryDispatcher, PricedQuote
from hubplate.reconciliation.reconciler import ReconcileResult, WebhookOutcome, WebhookReconciler
from hubplate.reconciliation.state_machine import OrderStateMachine, TransitionOutcome

__all__ = [
    "CaptureResult",
    "DeliveryDispatcher",
    "OrderStateMachine",
    "PaymentCaptureOrchestrator",
    "PricedQuote",
    "ReconcileResult",
    "TransitionOutcome",
    "WebhookOutcome",
    "WebhookReconciler",
]
