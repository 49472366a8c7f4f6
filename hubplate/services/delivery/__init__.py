"""
Delivery Service Factory

Usage:
    from hubplate.services.delivery import get_delivery_service

    # Returns MockDeliveryService or UberDirectService based on ENV_MODE
    delivery_service = get_delivery_service()

Environment Switching:
    - ENV_MODE=development → MockDeliveryService (no API calls)
    - ENV_MODE=staging / production → UberDirectService
"""

import logging
from functools import lru_cache

from hubplate.core.config import get_settings
from hubplate.services.delivery.base import (
    BaseDeliveryService,
    DeliveryContact,
    DeliveryQuote,
    DeliveryRequest,
    DeliveryResult,
    ManifestItem,
)
from hubplate.services.delivery.mock import MockDeliveryService
from hubplate.services.delivery.uber import UberDirectService

logger = logging.getLogger(__name__)


@lru_cache()
def get_delivery_service() -> BaseDeliveryService:
    """
    Get the configured courier service instance (cached per process, so
    the OAuth token cache is shared).
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Delivery Service: Using MockDeliveryService (development mode)")
        return MockDeliveryService()

    logger.info(
        f"Delivery Service: Using UberDirectService "
        f"({settings.env_mode.value} mode)"
    )
    return UberDirectService()


def reset_delivery_service() -> None:
    """Clear the cached courier service instance."""
    get_delivery_service.cache_clear()
    logger.debug("Delivery service cache cleared")


__all__ = [
    "get_delivery_service",
    "reset_delivery_service",
    "BaseDeliveryService",
    "DeliveryContact",
    "DeliveryQuote",
    "DeliveryRequest",
    "DeliveryResult",
    "ManifestItem",
    "MockDeliveryService",
    "UberDirectService",
]
