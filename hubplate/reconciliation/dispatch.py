"""
Delivery Dispatcher

Quotes and books courier deliveries for delivery orders. Booking is what
gives an order its delivery_id, the key courier webhooks are matched on.

Network calls happen before any database write, and the delivery id is
attached with a set-once update: two racing requests for the same order
cannot both store a reference.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from hubplate.core.config import Settings
from hubplate.core.exceptions import (
    DeliveryAlreadyRequestedError,
    DeliveryRequestError,
    LocationNotFoundError,
    OrderNotFoundError,
    OrderStateConflictError,
    PersistenceError,
)
from hubplate.models import Location, Order, OrderType
from hubplate.reconciliation.capture import to_cents
from hubplate.reconciliation.state_machine import OrderStateMachine
from hubplate.services.delivery.base import (
    BaseDeliveryService,
    DeliveryContact,
    DeliveryRequest,
    ManifestItem,
)

logger = logging.getLogger(__name__)


@dataclass
class PricedQuote:
    """Courier quote with the platform markup applied."""
    quote_id: str
    courier_fee_cents: int
    markup_cents: int
    total_fee_cents: int
    currency: str = "usd"
    duration: Optional[int] = None
    pickup_duration: Optional[int] = None
    dropoff_eta: Optional[str] = None


class DeliveryDispatcher:
    """
    Attributes:
        delivery_service: Mock or Uber Direct courier service
        state_machine: Writes the delivery reference
        settings: Platform markup
    """

    def __init__(
        self,
        delivery_service: BaseDeliveryService,
        state_machine: OrderStateMachine,
        settings: Settings,
    ):
        self.delivery_service = delivery_service
        self.state_machine = state_machine
        self.settings = settings

    async def quote(
        self,
        session: AsyncSession,
        location_id: str,
        dropoff_address: str,
        pickup_address: Optional[str] = None,
    ) -> PricedQuote:
        """
        Quote a delivery from a location, with the platform markup added.

        Raises:
            LocationNotFoundError: Unknown location
            DeliveryRequestError: The courier refused to quote
        """
        location = await session.get(Location, location_id)
        if location is None:
            raise LocationNotFoundError(location_id)
        await session.commit()

        quote = await self.delivery_service.create_quote(
            pickup_address=pickup_address or location.address or "",
            dropoff_address=dropoff_address,
            customer_id=location.uber_organization_id,
        )
        if not quote.success:
            raise DeliveryRequestError(quote.error_message or "Courier refused to quote")

        markup = self.settings.delivery_markup_cents
        return PricedQuote(
            quote_id=quote.quote_id,
            courier_fee_cents=quote.fee_cents,
            markup_cents=markup,
            total_fee_cents=quote.fee_cents + markup,
            currency=quote.currency,
            duration=quote.duration,
            pickup_duration=quote.pickup_duration,
            dropoff_eta=quote.dropoff_eta,
        )

    async def request(
        self,
        session: AsyncSession,
        order_id: str,
        quote_id: str,
        dropoff: DeliveryContact,
        manifest_items: Optional[list[ManifestItem]] = None,
    ) -> Order:
        """
        Book a courier for a delivery order and store its delivery id.

        Raises:
            OrderNotFoundError: Unknown order
            OrderStateConflictError: Not a delivery order
            DeliveryAlreadyRequestedError: The order already has a delivery
            DeliveryRequestError: The courier refused the booking
            PersistenceError: The delivery id could not be stored
        """
        order = await session.get(Order, order_id, populate_existing=True)
        if order is None:
            raise OrderNotFoundError(order_id)
        if order.order_type != OrderType.DELIVERY:
            raise OrderStateConflictError(f"Order {order_id} is not a delivery order")
        if order.delivery_id is not None:
            raise DeliveryAlreadyRequestedError(
                f"Order {order_id} already has delivery {order.delivery_id}"
            )

        location = await session.get(Location, order.location_id)
        if location is None:
            raise LocationNotFoundError(order.location_id)
        await session.commit()

        result = await self.delivery_service.create_delivery(
            DeliveryRequest(
                quote_id=quote_id,
                pickup=DeliveryContact(name=location.name, address=location.address or ""),
                dropoff=dropoff,
                order_value_cents=to_cents(order.total),
                manifest_items=manifest_items or [],
                customer_id=location.uber_organization_id,
            )
        )
        if not result.success:
            raise DeliveryRequestError(result.error_message or "Courier refused the delivery")

        try:
            attached = await self.state_machine.attach_delivery(
                session, order.id, result.delivery_id
            )
            if not attached:
                await session.rollback()
                logger.warning(
                    f"Order {order_id}: delivery {result.delivery_id} booked but another "
                    f"request stored its reference first"
                )
                raise DeliveryAlreadyRequestedError(
                    f"Order {order_id} already has a delivery"
                )
            await session.commit()
            await session.refresh(order)
        except DBAPIError as e:
            await session.rollback()
            raise PersistenceError(f"Could not store delivery for order {order_id}") from e

        logger.info(f"Order {order_id}: delivery {result.delivery_id} requested")
        return order
