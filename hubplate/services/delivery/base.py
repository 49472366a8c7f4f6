"""
Delivery Service Abstract Base Class

Defines the interface contract for courier integrations. Both
MockDeliveryService and UberDirectService implement it, so the delivery
dispatcher does not care which one is active.

Design Pattern: Strategy Pattern (same layout as the payment services)

Amounts are integer cents, as the courier API reports them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class DeliveryQuote:
    """
    Standardized courier quote.

    Attributes:
        success: Whether the courier returned a quote
        quote_id: Courier quote reference, required to book the delivery
        fee_cents: Courier fee before platform markup
        currency: Currency code
        duration: Minutes until dropoff
        pickup_duration: Minutes until the courier reaches the restaurant
        dropoff_eta: ISO timestamp of the estimated dropoff
        error_message: Error description if quoting failed
    """
    success: bool
    quote_id: Optional[str] = None
    fee_cents: int = 0
    currency: str = "usd"
    duration: Optional[int] = None
    pickup_duration: Optional[int] = None
    dropoff_eta: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class DeliveryResult:
    """
    Standardized result from booking a delivery.

    Attributes:
        success: Whether the courier accepted the delivery
        delivery_id: Courier delivery reference, stored as Order.delivery_id
        status: Courier status at creation (usually "pending")
        tracking_url: Customer-facing tracking page
        error_message: Error description if booking failed
    """
    success: bool
    delivery_id: Optional[str] = None
    status: Optional[str] = None
    tracking_url: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class DeliveryContact:
    """Name, address and phone of one end of a delivery."""
    name: str
    address: str
    phone_number: Optional[str] = None


@dataclass
class ManifestItem:
    name: str
    quantity: int = 1


@dataclass
class DeliveryRequest:
    """
    Everything the courier needs to book a delivery from a quote.

    Attributes:
        quote_id: Quote returned by create_quote
        pickup: The restaurant
        dropoff: The customer
        order_value_cents: Declared value of the goods
        manifest_items: What the courier carries
        customer_id: Courier sub-organization (None = service default)
    """
    quote_id: str
    pickup: DeliveryContact
    dropoff: DeliveryContact
    order_value_cents: int
    manifest_items: list[ManifestItem] = field(default_factory=list)
    customer_id: Optional[str] = None


class BaseDeliveryService(ABC):
    """
    Abstract base class for courier services.

    Implementations never raise for courier-side failures; they return
    success=False with a reason.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the courier (e.g., "mock", "uber")."""
        pass

    @abstractmethod
    async def create_quote(
        self,
        pickup_address: str,
        dropoff_address: str,
        customer_id: Optional[str] = None,
        pickup_phone_number: Optional[str] = None,
        dropoff_phone_number: Optional[str] = None,
    ) -> DeliveryQuote:
        """
        Ask the courier what a delivery would cost.

        Args:
            pickup_address: Restaurant address
            dropoff_address: Customer address
            customer_id: Courier sub-organization (None = service default)
        """
        pass

    @abstractmethod
    async def create_delivery(self, request: DeliveryRequest) -> DeliveryResult:
        """Book a delivery from a previously issued quote."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the courier.

        Returns:
            bool: True if service is reachable and operational
        """
        pass
