"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from hubplate.core.config import get_settings, setup_logging, Settings, EnvironmentMode, SignaturePolicy
from hubplate.core.exceptions import (
    AccountNotConnectedError,
    AmountMismatchError,
    CaptureFailedError,
    DeliveryAlreadyRequestedError,
    DeliveryRequestError,
    HubplateError,
    LocationNotFoundError,
    MalformedEventError,
    OrderNotFoundError,
    OrderNotPayableError,
    OrderStateConflictError,
    PersistenceError,
    SignatureRejectedError,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "SignaturePolicy",
    "AccountNotConnectedError",
    "AmountMismatchError",
    "CaptureFailedError",
    "DeliveryAlreadyRequestedError",
    "DeliveryRequestError",
    "HubplateError",
    "LocationNotFoundError",
    "MalformedEventError",
    "OrderNotFoundError",
    "OrderNotPayableError",
    "OrderStateConflictError",
    "PersistenceError",
    "SignatureRejectedError",
]
