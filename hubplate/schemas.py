"""
Pydantic Schemas for Request/Response Validation

Money travels as decimal strings (e.g. "25.00") and is parsed into
Decimal, never float.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from hubplate.models import FulfillmentStatus, OrderType, PaymentStatus


# =============================================================================
# PAYMENT SCHEMAS
# =============================================================================

class CaptureRequest(BaseModel):
    """
    Terminal capture, pay-at-table or manual charge request.

    amount is optional and only checked against the stored total; the
    charge is always computed server-side. tip only applies to an order
    with no tip stored; otherwise it must be 0 or repeat the stored tip.
    """
    order_id: str = Field(..., min_length=1)
    amount: Optional[Decimal] = Field(None, ge=0, decimal_places=2, examples=["25.00"])
    tip: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2, examples=["3.00"])
    payment_method_id: Optional[str] = Field(None, examples=["pm_card_visa"])


class CaptureResponse(BaseModel):
    """Processor intent created by a capture call."""
    status: str
    provider_intent_id: str
    client_secret: Optional[str] = None


class ConnectionTokenResponse(BaseModel):
    secret: str


# =============================================================================
# WEBHOOK SCHEMAS
# =============================================================================

class WebhookAck(BaseModel):
    """Body every acknowledged webhook gets."""
    received: bool = True


# =============================================================================
# DELIVERY SCHEMAS
# =============================================================================

class DeliveryQuoteRequest(BaseModel):
    location_id: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1, max_length=255, examples=["350 Fifth Avenue, New York, NY"])
    pickup_address: Optional[str] = Field(None, max_length=255)


class DeliveryQuoteResponse(BaseModel):
    quote_id: str
    courier_fee: int = Field(..., description="Courier fee in cents")
    markup: int = Field(..., description="Platform markup in cents")
    total_fee: int = Field(..., description="Fee charged to the customer in cents")
    currency: str
    duration: Optional[int] = None
    pickup_duration: Optional[int] = None
    dropoff_eta: Optional[str] = None


class ManifestItemSchema(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    quantity: int = Field(default=1, ge=1, le=99)


class DeliveryCreateRequest(BaseModel):
    """Book a courier for a delivery order from a quote."""
    quote_id: str = Field(..., min_length=1)
    dropoff_name: str = Field(..., min_length=1, max_length=100)
    dropoff_address: str = Field(..., min_length=1, max_length=255)
    dropoff_phone_number: Optional[str] = Field(None, max_length=20)
    manifest_items: List[ManifestItemSchema] = Field(default_factory=list)


# =============================================================================
# ORDER SCHEMAS
# =============================================================================

class OrderResponse(BaseModel):
    """Response schema for a single order."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    location_id: str
    order_type: OrderType
    fulfillment_status: FulfillmentStatus
    payment_status: PaymentStatus
    payment_intent_id: Optional[str]
    delivery_id: Optional[str]
    subtotal: Decimal
    tax: Decimal
    tip: Decimal
    delivery_fee: Decimal
    total: Decimal
    paid_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class SimulatedOrderCreate(BaseModel):
    """Development-only order seeding."""
    location_id: Optional[str] = None
    order_type: OrderType = OrderType.DINE_IN
    subtotal: Decimal = Field(default=Decimal("20.00"), ge=0, decimal_places=2)
    tax: Decimal = Field(default=Decimal("1.60"), ge=0, decimal_places=2)
    tip: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    delivery_id: Optional[str] = None


# =============================================================================
# SYSTEM SCHEMAS
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    payment_service: str
    delivery_service: str
    timestamp: datetime
