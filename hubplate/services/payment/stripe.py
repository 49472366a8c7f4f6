"""
Stripe Payment Service Implementation

Production implementation using the official Stripe Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - STRIPE_SECRET_KEY must be set in environment
    - STRIPE_WEBHOOK_SECRET for webhook verification (see
      hubplate.reconciliation.signatures)

Security Notes:
    - Never log full card numbers or CVCs
    - Card details never reach this service; manual charges use a payment
      method created client-side
    - Every intent carries metadata.order_id so its webhook can be matched
"""

import logging
from datetime import datetime
from typing import Any, Optional

import stripe
from stripe import (
    APIConnectionError,
    AuthenticationError,
    CardError,
    InvalidRequestError,
    StripeError,
)

from hubplate.core.config import get_settings
from hubplate.services.payment.base import (
    BasePaymentService,
    ConnectionTokenResult,
    PaymentResult,
)

logger = logging.getLogger(__name__)


class StripePaymentService(BasePaymentService):
    """
    Production Stripe payment service implementation.

    Creates card-present intents for Terminal readers, browser intents for
    pay-at-table, confirmed intents for manual POS charges, and Terminal
    connection tokens. When a destination
    account is given the charge becomes a Connect destination charge with
    an application fee.

    Configuration:
        Requires STRIPE_SECRET_KEY environment variable.
    """

    def __init__(self):
        """
        Initialize Stripe with API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for production mode. "
                "Set it in your .env file or environment variables."
            )

        # Configure Stripe SDK
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = "2023-10-16"  # Pin API version for stability

        self._currency = settings.stripe_currency

        logger.info(
            f"StripePaymentService initialized "
            f"(api_version={stripe.api_version})"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "stripe"

    @staticmethod
    def _connect_params(
        destination_account: Optional[str],
        application_fee_cents: Optional[int],
    ) -> dict[str, Any]:
        """Transfer and fee parameters for a Connect destination charge."""
        if not destination_account:
            return {}
        params: dict[str, Any] = {"transfer_data": {"destination": destination_account}}
        if application_fee_cents:
            params["application_fee_amount"] = application_fee_cents
        return params

    @staticmethod
    def _elapsed_ms(start_time: datetime) -> float:
        return (datetime.now() - start_time).total_seconds() * 1000

    def _error_result(self, e: StripeError, start_time: datetime) -> PaymentResult:
        """Translate an SDK exception into a failed PaymentResult."""
        elapsed_ms = self._elapsed_ms(start_time)

        if isinstance(e, CardError):
            # Card was declined
            logger.warning(f"Stripe: Card declined - {e.code}: {e.user_message}")
            return PaymentResult(
                success=False,
                error_message=e.user_message or "Your card was declined.",
                error_code=e.code,
                response_time_ms=elapsed_ms,
            )

        if isinstance(e, InvalidRequestError):
            logger.error(f"Stripe: Invalid request - {e}")
            return PaymentResult(
                success=False,
                error_message=e.user_message or str(e),
                error_code="invalid_request",
                response_time_ms=elapsed_ms,
            )

        if isinstance(e, AuthenticationError):
            # API key issues
            logger.critical(f"Stripe: Authentication failed - {e}")
            return PaymentResult(
                success=False,
                error_message="Payment service configuration error",
                error_code="authentication_error",
            )

        if isinstance(e, APIConnectionError):
            logger.error(f"Stripe: Connection error - {e}")
            return PaymentResult(
                success=False,
                error_message="Payment service temporarily unavailable",
                error_code="connection_error",
                response_time_ms=elapsed_ms,
            )

        logger.error(f"Stripe: Error - {e}")
        return PaymentResult(
            success=False,
            error_message="Payment processing error",
            error_code="stripe_error",
            response_time_ms=elapsed_ms,
        )

    def _intent_result(self, intent: Any, start_time: datetime) -> PaymentResult:
        return PaymentResult(
            success=True,
            payment_intent_id=intent.id,
            status=intent.status,
            client_secret=intent.client_secret,
            amount_cents=intent.amount,
            currency=intent.currency,
            response_time_ms=self._elapsed_ms(start_time),
            metadata=dict(intent.metadata or {}),
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
        Create a card_present PaymentIntent for a Terminal reader.

        Capture is automatic; the reader collects and confirms the payment
        with the client_secret.
        """
        start_time = datetime.now()

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency or self._currency,
                payment_method_types=["card_present"],
                capture_method="automatic",
                metadata=metadata or {},
                **self._connect_params(destination_account, application_fee_cents),
            )
        except StripeError as e:
            return self._error_result(e, start_time)

        logger.info(
            f"Stripe: Terminal PaymentIntent created - {intent.id} - "
            f"status={intent.status}"
        )
        return self._intent_result(intent, start_time)

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str = "usd",
        metadata: Optional[dict] = None,
        destination_account: Optional[str] = None,
        application_fee_cents: Optional[int] = None,
    ) -> PaymentResult:
        """Create a PaymentIntent the guest confirms in the browser."""
        start_time = datetime.now()

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency or self._currency,
                automatic_payment_methods={"enabled": True},
                metadata=metadata or {},
                **self._connect_params(destination_account, application_fee_cents),
            )
        except StripeError as e:
            return self._error_result(e, start_time)

        logger.info(
            f"Stripe: PaymentIntent created - {intent.id} - status={intent.status}"
        )
        return self._intent_result(intent, start_time)

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
        Create and confirm a PaymentIntent in one call.

        Redirect-based payment methods are disabled: a staff member at the
        POS cannot complete a redirect, so such an intent would never settle.
        """
        start_time = datetime.now()

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency or self._currency,
                payment_method=payment_method_id,
                confirm=True,
                automatic_payment_methods={
                    "enabled": True,
                    "allow_redirects": "never",
                },
                metadata=metadata or {},
                **self._connect_params(destination_account, application_fee_cents),
            )
        except StripeError as e:
            return self._error_result(e, start_time)

        logger.info(
            f"Stripe: Manual charge {intent.id} - status={intent.status}"
        )
        return self._intent_result(intent, start_time)

    async def create_connection_token(self) -> ConnectionTokenResult:
        """Create a Terminal connection token."""
        try:
            token = stripe.terminal.ConnectionToken.create()
        except StripeError as e:
            logger.error(f"Stripe: Connection token failed - {e}")
            return ConnectionTokenResult(
                success=False,
                error_message="Failed to create connection token",
            )

        return ConnectionTokenResult(success=True, secret=token.secret)

    async def health_check(self) -> bool:
        """
        Verify Stripe API connectivity.

        Makes a lightweight API call to verify credentials and connectivity.
        """
        try:
            # Retrieve account info (lightweight call)
            stripe.Account.retrieve()
            logger.debug("Stripe: Health check passed")
            return True

        except StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
