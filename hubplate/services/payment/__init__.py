"""
Payment Service Factory

Provides a single entry point for obtaining a payment service instance.
The factory pattern allows the rest of the application to remain agnostic
about which implementation is being used.

Usage:
    from hubplate.services.payment import get_payment_service

    # Returns MockPaymentService or StripePaymentService based on ENV_MODE
    payment_service = get_payment_service()

    result = await payment_service.create_terminal_payment_intent(2999)

Environment Switching:
    - ENV_MODE=development → MockPaymentService (no API calls)
    - ENV_MODE=staging → StripePaymentService (test keys)
    - ENV_MODE=production → StripePaymentService (live keys)
"""

import logging
from functools import lru_cache

from hubplate.core.config import get_settings
from hubplate.services.payment.base import (
    BasePaymentService,
    ConnectionTokenResult,
    PaymentResult,
)
from hubplate.services.payment.mock import MockPaymentService
from hubplate.services.payment.stripe import StripePaymentService

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_service() -> BasePaymentService:
    """
    Get the configured payment service instance.

    The instance is cached (singleton pattern) so the Stripe SDK is
    configured once per process.

    Returns:
        BasePaymentService: Configured payment service instance

    Raises:
        ValueError: If production mode but Stripe key not configured
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Service: Using MockPaymentService (development mode)")
        return MockPaymentService(
            failure_rate=0.10,  # 10% simulated declines
            min_latency=0.2,
            max_latency=0.8,
        )
    else:
        logger.info(
            f"Payment Service: Using StripePaymentService "
            f"({settings.env_mode.value} mode)"
        )
        return StripePaymentService()


def reset_payment_service() -> None:
    """
    Clear the cached payment service instance.

    Useful for testing or when configuration changes at runtime.
    The next call to get_payment_service() will create a new instance.
    """
    get_payment_service.cache_clear()
    logger.debug("Payment service cache cleared")


# Export commonly used types and functions
__all__ = [
    "get_payment_service",
    "reset_payment_service",
    "BasePaymentService",
    "ConnectionTokenResult",
    "PaymentResult",
    "MockPaymentService",
    "StripePaymentService",
]
