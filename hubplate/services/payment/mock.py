"""
Mock Payment Service Implementation

Simulates Stripe-like payment intents without making real API calls.
Used in development mode (ENV_MODE=development) to exercise the capture
flows and the webhook simulator locally.

Behavior:
    - Simulates realistic response times (configurable latency)
    - Randomly declines a share of manual charges (failure_rate)
    - Honors Stripe's test payment methods:
        pm_card_chargeDeclined          -> declined
        pm_card_authenticationRequired  -> requires_action
    - Generates Stripe-like IDs (pi_mock_xxx)
"""

import asyncio
import logging
import random
import uuid
from typing import Optional

from hubplate.services.payment.base import (
    INTENT_REQUIRES_ACTION,
    INTENT_REQUIRES_PAYMENT_METHOD,
    INTENT_SUCCEEDED,
    BasePaymentService,
    ConnectionTokenResult,
    PaymentResult,
)

logger = logging.getLogger(__name__)

DECLINED_PAYMENT_METHOD = "pm_card_chargeDeclined"
AUTHENTICATION_REQUIRED_PAYMENT_METHOD = "pm_card_authenticationRequired"


class MockPaymentService(BasePaymentService):
    """
    Mock implementation of the payment service.

    Attributes:
        failure_rate: Probability of a simulated decline (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        intents: Every intent created, keyed by id (inspected by tests)

    Example:
        >>> service = MockPaymentService(failure_rate=0.0, min_latency=0, max_latency=0)
        >>> result = await service.create_and_confirm_payment_intent(2999, "pm_card_visa")
        >>> result.status
        'succeeded'
    """

    # Simulated failure reasons (mimics real Stripe decline codes)
    DECLINE_REASONS = [
        ("card_declined", "Your card was declined."),
        ("insufficient_funds", "Your card has insufficient funds."),
        ("expired_card", "Your card has expired."),
        ("incorrect_cvc", "Your card's security code is incorrect."),
        ("processing_error", "An error occurred while processing your card."),
    ]

    def __init__(
        self,
        failure_rate: float = 0.10,
        min_latency: float = 0.2,
        max_latency: float = 0.8,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.intents: dict[str, dict] = {}

        logger.info(
            f"MockPaymentService initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    def _generate_payment_intent_id(self) -> str:
        """Generate a Stripe-like payment intent ID."""
        return f"pi_mock_{uuid.uuid4().hex[:24]}"

    async def _simulate_latency(self) -> float:
        """
        Simulate network latency.

        Returns:
            float: Actual latency in milliseconds
        """
        latency = random.uniform(self.min_latency, self.max_latency)
        if latency > 0:
            await asyncio.sleep(latency)
        return latency * 1000

    def _should_fail(self) -> bool:
        """Determine if this request should simulate a failure."""
        return random.random() < self.failure_rate

    def _record(
        self,
        amount_cents: int,
        currency: str,
        status: str,
        metadata: Optional[dict],
        destination_account: Optional[str],
        application_fee_cents: Optional[int],
        latency_ms: float,
    ) -> PaymentResult:
        payment_intent_id = self._generate_payment_intent_id()
        self.intents[payment_intent_id] = {
            "amount": amount_cents,
            "currency": currency,
            "status": status,
            "metadata": dict(metadata or {}),
            "destination": destination_account,
            "application_fee_amount": application_fee_cents,
        }
        return PaymentResult(
            success=True,
            payment_intent_id=payment_intent_id,
            status=status,
            client_secret=f"{payment_intent_id}_secret_mock",
            amount_cents=amount_cents,
            currency=currency,
            response_time_ms=latency_ms,
            metadata={"mock": True, **(metadata or {})},
        )

    async def create_terminal_payment_intent(
        self,
        amount_cents: int,
        currency: str = "usd",
        metadata: Optional[dict] = None,
        destination_account: Optional[str] = None,
        application_fee_cents: Optional[int] = None,
    ) -> PaymentResult:
        """
        Simulate creating a card-present intent.

        The reader has not been tapped yet, so the intent waits for a
        payment method like a real one does.
        """
        if amount_cents <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        latency_ms = await self._simulate_latency()
        result = self._record(
            amount_cents,
            currency,
            INTENT_REQUIRES_PAYMENT_METHOD,
            metadata,
            destination_account,
            application_fee_cents,
            latency_ms,
        )

        logger.debug(f"Mock: Created terminal intent {result.payment_intent_id}")
        return result

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str = "usd",
        metadata: Optional[dict] = None,
        destination_account: Optional[str] = None,
        application_fee_cents: Optional[int] = None,
    ) -> PaymentResult:
        """Simulate an intent waiting for the guest to pay."""
        if amount_cents <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        latency_ms = await self._simulate_latency()
        result = self._record(
            amount_cents,
            currency,
            INTENT_REQUIRES_PAYMENT_METHOD,
            metadata,
            destination_account,
            application_fee_cents,
            latency_ms,
        )

        logger.debug(f"Mock: Created pay-at-table intent {result.payment_intent_id}")
        return result

    async def create_and_confirm_payment_intent(
        self,
        amount_cents: int,
        payment_method_id: str,
        currency: str = "usd",
        metadata: Optional[dict] = None,
        destination_account: Optional[str] = None,
        application_fee_cents: Optional[int] = None,
    ) -> PaymentResult:
        """Simulate a confirmed charge against a stored payment method."""
        if amount_cents <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        latency_ms = await self._simulate_latency()

        decline = None
        if payment_method_id == DECLINED_PAYMENT_METHOD:
            decline = self.DECLINE_REASONS[0]
        elif self._should_fail():
            decline = random.choice(self.DECLINE_REASONS)

        if decline is not None:
            error_code, error_message = decline
            logger.debug(f"Mock: Charge declined - {error_code}")
            return PaymentResult(
                success=False,
                amount_cents=amount_cents,
                currency=currency,
                error_message=error_message,
                error_code=error_code,
                response_time_ms=latency_ms,
            )

        status = INTENT_SUCCEEDED
        if payment_method_id == AUTHENTICATION_REQUIRED_PAYMENT_METHOD:
            status = INTENT_REQUIRES_ACTION

        result = self._record(
            amount_cents,
            currency,
            status,
            metadata,
            destination_account,
            application_fee_cents,
            latency_ms,
        )

        logger.info(
            f"Mock: Charge {result.payment_intent_id} - "
            f"{amount_cents / 100:.2f} {currency.upper()} - status={status}"
        )
        return result

    async def create_connection_token(self) -> ConnectionTokenResult:
        """Issue a fake connection token."""
        await self._simulate_latency()
        return ConnectionTokenResult(
            success=True,
            secret=f"pst_mock_{uuid.uuid4().hex[:24]}",
        )

    async def health_check(self) -> bool:
        """
        Mock health check always returns True.

        In development, we assume the mock service is always available.
        """
        logger.debug("Mock: Health check passed")
        return True
