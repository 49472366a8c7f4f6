"""
Error Taxonomy

Domain exceptions raised by the reconciliation core and the provider
services. The HTTP layer (hubplate.main) is the only place that turns
them into status codes.

Unmatched references and stale or duplicate transitions are deliberately
absent: they are normal outcomes, reported as WebhookOutcome values and
acknowledged to the sender.
"""

from typing import Optional


class HubplateError(Exception):
    """Base class for all domain errors."""


class SignatureRejectedError(HubplateError):
    """A webhook signature did not verify and the provider policy is to reject."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Invalid {provider} webhook signature")


class MalformedEventError(HubplateError):
    """A webhook body is not a structurally valid provider event."""


class OrderNotFoundError(HubplateError):
    """No order exists with the given id."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class LocationNotFoundError(HubplateError):
    """No restaurant location exists with the given id."""

    def __init__(self, location_id: str):
        self.location_id = location_id
        super().__init__(f"Location {location_id} not found")


class AmountMismatchError(HubplateError):
    """A client-supplied amount disagrees with the stored order total."""


class OrderStateConflictError(HubplateError):
    """The requested action does not fit the order's current state."""


class OrderNotPayableError(OrderStateConflictError):
    """The order is already paid or refunded."""


class CaptureFailedError(HubplateError):
    """
    The payment processor refused or did not complete a charge.

    Attributes:
        message: Processor reason, safe to show to staff
        code: Machine-readable processor code
        intent_status: Payment intent status when one was created
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        intent_status: Optional[str] = None,
    ):
        self.message = message
        self.code = code
        self.intent_status = intent_status
        super().__init__(message)


class DeliveryAlreadyRequestedError(OrderStateConflictError):
    """The order already carries a courier delivery reference."""


class AccountNotConnectedError(OrderStateConflictError):
    """The location cannot receive payouts yet."""


class DeliveryRequestError(HubplateError):
    """The courier API refused a quote or delivery request."""


class PersistenceError(HubplateError):
    """The database was unavailable while applying a change."""
