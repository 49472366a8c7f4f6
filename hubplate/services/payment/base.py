"""
Payment Service Abstract Base Class

Defines the interface contract for all payment service implementations.
Both MockPaymentService and StripePaymentService must implement these methods,
so the capture orchestrator behaves identically regardless of which service
is active.

Design Pattern: Strategy Pattern
    - Allows runtime switching between payment providers
    - Facilitates testing with mock implementations

All amounts crossing this interface are integer cents. Conversion from the
order's Decimal money happens once, in the capture orchestrator.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

# PaymentIntent statuses that matter to the capture flows
INTENT_SUCCEEDED = "succeeded"
INTENT_REQUIRES_PAYMENT_METHOD = "requires_payment_method"
INTENT_REQUIRES_ACTION = "requires_action"


@dataclass
class PaymentResult:
    """
    Standardized result from creating a payment intent.

    Provider errors never escape a payment service as exceptions; they come
    back as success=False with the processor's reason.

    Attributes:
        success: Whether the processor accepted the request
        payment_intent_id: Processor reference (Stripe format: pi_xxx)
        status: PaymentIntent status (succeeded, requires_action, ...)
        client_secret: Secret the terminal reader or browser confirms with
        amount_cents: Amount in the smallest currency unit
        currency: Currency code (e.g., "usd")
        error_message: Processor reason, safe to show to staff
        error_code: Machine-readable error code
        response_time_ms: Time taken by the processor call
        metadata: Metadata attached to the intent
    """
    success: bool
    payment_intent_id: Optional[str] = None
    status: Optional[str] = None
    client_secret: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: str = "usd"
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_time_ms: float = 0.0
    metadata: Optional[dict] = None

    @property
    def succeeded(self) -> bool:
        """Processor reports the funds as captured."""
        return self.success and self.status == INTENT_SUCCEEDED


@dataclass
class ConnectionTokenResult:
    """
    Result from issuing a Terminal connection token.

    Attributes:
        success: Whether a token was issued
        secret: Token secret handed to the reader SDK
        error_message: Error description if issuing failed
    """
    success: bool
    secret: Optional[str] = None
    error_message: Optional[str] = None


class BasePaymentService(ABC):
    """
    Abstract base class for payment services.

    All payment service implementations (Mock, Stripe) must inherit from
    this class and implement all abstract methods.

    Example:
        >>> service = get_payment_service()  # Returns Mock or Stripe
        >>> result = await service.create_terminal_payment_intent(
        ...     amount_cents=2999,
        ...     metadata={"order_id": "..."},
        ... )
        >>> if result.success:
        ...     print(f"Payment ID: {result.payment_intent_id}")
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the payment provider.

        Returns:
            str: Provider name (e.g., "mock", "stripe")
        """
        pass

    @abstractmethod
    async def create_terminal_payment_intent(
        self,
        amount_cents: int,
        currency: str = "usd",
        metadata: Optional[dict] = None,
        destination_account: Optional[str] = None,
        application_fee_cents: Optional[int] = None,
    ) -> PaymentResult:
        """
        Create a card-present intent with automatic capture.

        The reader confirms it with the returned client_secret; the outcome
        arrives later as a webhook.

        Args:
            amount_cents: Amount to charge, tip included
            currency: Three-letter currency code
            metadata: Key-value data attached to the intent (order_id etc.)
            destination_account: Connected account receiving the transfer
            application_fee_cents: Platform fee kept on a transfer
        """
        pass

    @abstractmethod
    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str = "usd",
        metadata: Optional[dict] = None,
        destination_account: Optional[str] = None,
        application_fee_cents: Optional[int] = None,
    ) -> PaymentResult:
        """
        Create an unconfirmed intent for the guest to pay on their device.

        Any payment method the account has enabled is allowed; the browser
        confirms it with the client_secret and the result arrives as a
        webhook.
        """
        pass

    @abstractmethod
    async def create_and_confirm_payment_intent(
        self,
        amount_cents: int,
        payment_method_id: str,
        currency: str = "usd",
        metadata: Optional[dict] = None,
        destination_account: Optional[str] = None,
        application_fee_cents: Optional[int] = None,
    ) -> PaymentResult:
        """
        Create an intent for a stored payment method and confirm it at once.

        A declined card is success=False. A created intent that did not
        complete (requires_action etc.) is success=True with that status.
        """
        pass

    @abstractmethod
    async def create_connection_token(self) -> ConnectionTokenResult:
        """Issue a connection token for a Terminal card reader."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the payment service.

        Returns:
            bool: True if service is reachable and operational
        """
        pass
