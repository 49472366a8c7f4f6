"""
Mock Delivery Service Implementation

Simulates Uber Direct quotes and deliveries without network calls.
Used in development mode (ENV_MODE=development) together with the
webhook simulator, which plays the courier's status pings back at the
server for the delivery ids handed out here.
"""

import asyncio
import logging
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from hubplate.services.delivery.base import (
    BaseDeliveryService,
    DeliveryQuote,
    DeliveryRequest,
    DeliveryResult,
)

logger = logging.getLogger(__name__)


class MockDeliveryService(BaseDeliveryService):
    """
    Mock implementation of the courier service.

    Attributes:
        base_fee_cents: Fee quoted for every delivery
        latency: Simulated response time in seconds
        quotes: Quote ids issued so far
        deliveries: Bookings made so far, keyed by delivery id
    """

    def __init__(self, base_fee_cents: int = 599, latency: float = 0.0):
        self.base_fee_cents = base_fee_cents
        self.latency = latency
        self.quotes: set[str] = set()
        self.deliveries: dict[str, DeliveryRequest] = {}

        logger.info(f"MockDeliveryService initialized (fee={base_fee_cents}c)")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)

    async def create_quote(
        self,
        pickup_address: str,
        dropoff_address: str,
        customer_id: Optional[str] = None,
        pickup_phone_number: Optional[str] = None,
        dropoff_phone_number: Optional[str] = None,
    ) -> DeliveryQuote:
        await self._simulate_latency()

        if not dropoff_address.strip():
            return DeliveryQuote(success=False, error_message="Dropoff address is required")

        quote_id = f"dqt_mock_{uuid.uuid4().hex[:16]}"
        self.quotes.add(quote_id)
        duration = random.randint(25, 45)

        return DeliveryQuote(
            success=True,
            quote_id=quote_id,
            fee_cents=self.base_fee_cents,
            duration=duration,
            pickup_duration=10,
            dropoff_eta=(datetime.now(timezone.utc) + timedelta(minutes=duration)).isoformat(),
        )

    async def create_delivery(self, request: DeliveryRequest) -> DeliveryResult:
        await self._simulate_latency()

        if request.quote_id not in self.quotes:
            return DeliveryResult(success=False, error_message="Quote not found or expired")

        delivery_id = f"del_mock_{uuid.uuid4().hex[:16]}"
        self.deliveries[delivery_id] = request

        logger.info(f"Mock: Delivery booked - {delivery_id}")
        return DeliveryResult(
            success=True,
            delivery_id=delivery_id,
            status="pending",
            tracking_url=f"https://delivery.mock/track/{delivery_id}",
        )

    async def health_check(self) -> bool:
        return True
