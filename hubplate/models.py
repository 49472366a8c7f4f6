"""
SQLAlchemy Database Models

The reconciliation core persists only a handful of things:
- Order: the canonical aggregate with two independent status axes
- Location: the owning restaurant and its connected payout account
- AppliedEvent: the append-only idempotency ledger for webhook events
"""

import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Numeric,
    String,
)
from sqlalchemy.sql import func

from hubplate.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class FulfillmentStatus(str, enum.Enum):
    """Kitchen and delivery progress of an order."""
    PENDING = "pending"
    SENT = "sent"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    """Money side of an order."""
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderType(str, enum.Enum):
    """Dine-in, pickup or delivery."""
    DINE_IN = "dine_in"
    PICKUP = "pickup"
    DELIVERY = "delivery"


class EventSource(str, enum.Enum):
    """External systems that push webhooks at us."""
    PAYMENT_PROCESSOR = "payment_processor"
    COURIER = "courier"


class Location(Base):
    """
    A restaurant location.

    stripe_account_id is the connected payout account charges are routed
    to; payouts_enabled follows the processor's account.updated events.
    """
    __tablename__ = "locations"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False)
    address = Column(String(255), nullable=True)

    stripe_account_id = Column(String(100), nullable=True, unique=True, index=True)
    payouts_enabled = Column(Boolean, default=False, nullable=False)
    uber_organization_id = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Location {self.id} - {self.name}>"


class Order(Base):
    """
    Main Order table - the canonical aggregate.

    Created by the ordering flow in (PENDING, UNPAID). From then on the
    status columns, payment_intent_id, delivery_id, paid_at and
    completed_at are only written through OrderStateMachine.
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_new_id)
    location_id = Column(
        String(36),
        ForeignKey("locations.id"),
        nullable=False,
        index=True,
    )

    order_type = Column(
        Enum(OrderType),
        default=OrderType.DINE_IN,
        nullable=False,
    )

    # =========================================================================
    # STATUS AXES
    # =========================================================================
    fulfillment_status = Column(
        Enum(FulfillmentStatus),
        default=FulfillmentStatus.PENDING,
        nullable=False,
        index=True,
    )
    payment_status = Column(
        Enum(PaymentStatus),
        default=PaymentStatus.UNPAID,
        nullable=False,
        index=True,
    )

    # =========================================================================
    # EXTERNAL REFERENCES (set once)
    # =========================================================================
    payment_intent_id = Column(String(100), nullable=True, index=True)
    delivery_id = Column(String(100), nullable=True, unique=True, index=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    tip = Column(Numeric(10, 2), nullable=False, default=0)
    delivery_fee = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False, default=0)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    paid_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return (
            f"<Order {self.id} - {self.order_type.value} - "
            f"{self.payment_status.value}/{self.fulfillment_status.value}>"
        )


class AppliedEvent(Base):
    """
    Idempotency ledger.

    The composite primary key (source, external_event_id) is the uniqueness
    guarantee: a second insert for the same event fails in the database,
    never in application code.
    """
    __tablename__ = "applied_events"

    source = Column(Enum(EventSource), primary_key=True)
    external_event_id = Column(String(255), primary_key=True)

    kind = Column(String(50), nullable=False)
    order_id = Column(String(36), nullable=True, index=True)
    outcome = Column(String(20), nullable=True)
    applied_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<AppliedEvent {self.source.value}:{self.external_event_id} - {self.outcome}>"
