"""
Event Normalization

Turns provider-specific webhook payloads into one small internal event type,
NormalizedEvent. Payloads are validated with Pydantic at this boundary so a
malformed body fails here with MalformedEventError instead of leaking None
values into the database.

Also home of the courier status mapper: Uber's delivery vocabulary is
mapped as a total function, because Uber may add statuses without notice
and an unknown status must land in a safe, non-terminal bucket.
"""

import enum
import logging
from dataclasses import dataclass, replace
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hubplate.core.exceptions import MalformedEventError
from hubplate.models import EventSource, FulfillmentStatus, Order

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    ACCOUNT_UPDATED = "account_updated"
    DELIVERY_STATUS_CHANGED = "delivery_status_changed"


class CourierStatus(str, enum.Enum):
    """Internal delivery vocabulary."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


PAYMENT_EVENT_KINDS = {
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "account.updated": EventKind.ACCOUNT_UPDATED,
}

COURIER_DELIVERY_STATUS_EVENT = "event.delivery_status"

_COURIER_STATUS_MAP = {
    "COMPLETED": CourierStatus.COMPLETED,
    "CANCELED": CourierStatus.CANCELLED,
    "RETURNED": CourierStatus.CANCELLED,
    "PENDING": CourierStatus.PENDING,
}

# Where each courier status puts a delivery order's fulfillment
COURIER_FULFILLMENT_TARGETS = {
    CourierStatus.PENDING: FulfillmentStatus.PENDING,
    CourierStatus.IN_PROGRESS: FulfillmentStatus.SENT,
    CourierStatus.COMPLETED: FulfillmentStatus.COMPLETED,
    CourierStatus.CANCELLED: FulfillmentStatus.CANCELLED,
}


@dataclass(frozen=True)
class NormalizedEvent:
    """
    Provider-neutral description of one webhook event.

    Attributes:
        source: Which provider sent it
        external_event_id: Ledger key (provider event id, or a synthetic key)
        order_ref: Order the event is about, None when it could not be tied
            to one of our orders
        kind: What happened
        status_value: Kind-specific status (courier status, payouts flag)
        provider_ref: Provider object id (payment intent, account, delivery)
    """
    source: EventSource
    external_event_id: str
    order_ref: Optional[str]
    kind: EventKind
    status_value: Optional[str] = None
    provider_ref: Optional[str] = None


# =============================================================================
# PROVIDER PAYLOAD SCHEMAS
# =============================================================================

class _StripeEventHeader(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    metadata: Optional[dict[str, Any]] = None
    charges_enabled: bool = False
    details_submitted: bool = False


class _StripeData(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    obj: _StripeObject = Field(..., alias="object")


class _StripeEvent(_StripeEventHeader):
    data: _StripeData


class _CourierMeta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    delivery_id: str = Field(..., min_length=1)
    status: Any = None


class _CourierEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_type: Optional[str] = None
    meta: Optional[dict[str, Any]] = None


# =============================================================================
# COURIER STATUS MAPPING
# =============================================================================

def map_courier_status(raw_status: Any) -> CourierStatus:
    """
    Map an Uber delivery status onto the internal vocabulary.

    Total by construction: COMPLETED, CANCELED/RETURNED and PENDING have
    explicit targets, every other value (including unseen strings and
    non-strings) is IN_PROGRESS. Never raises.
    """
    if not isinstance(raw_status, str):
        return CourierStatus.IN_PROGRESS
    return _COURIER_STATUS_MAP.get(raw_status.strip().upper(), CourierStatus.IN_PROGRESS)


def courier_event_id(delivery_id: str, status: CourierStatus) -> str:
    """Synthetic ledger key for courier events, which carry no stable id."""
    return f"{delivery_id}:{status.value}"


# =============================================================================
# NORMALIZERS
# =============================================================================

def normalize_payment_event(payload: Any) -> Optional[NormalizedEvent]:
    """
    Normalize a verified Stripe event.

    Returns:
        NormalizedEvent, or None for event types we do not handle

    Raises:
        MalformedEventError: If the envelope or the event object is invalid
    """
    try:
        header = _StripeEventHeader.model_validate(payload)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid Stripe event envelope: {e.error_count()} errors") from e

    kind = PAYMENT_EVENT_KINDS.get(header.type)
    if kind is None:
        return None

    try:
        event = _StripeEvent.model_validate(payload)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid Stripe {header.type} object") from e

    obj = event.data.obj

    if kind == EventKind.ACCOUNT_UPDATED:
        payouts_ready = obj.charges_enabled and obj.details_submitted
        return NormalizedEvent(
            source=EventSource.PAYMENT_PROCESSOR,
            external_event_id=event.id,
            order_ref=None,
            kind=kind,
            status_value="enabled" if payouts_ready else "disabled",
            provider_ref=obj.id,
        )

    order_ref = (obj.metadata or {}).get("order_id") or None
    if order_ref is not None:
        order_ref = str(order_ref)

    return NormalizedEvent(
        source=EventSource.PAYMENT_PROCESSOR,
        external_event_id=event.id,
        order_ref=order_ref,
        kind=kind,
        status_value=header.type,
        provider_ref=obj.id,
    )


def normalize_courier_event(payload: Any) -> Optional[NormalizedEvent]:
    """
    Normalize an Uber Direct webhook.

    The order is not known yet (order_ref is None); resolve_courier_order
    fills it in from the delivery id.

    Returns:
        NormalizedEvent, or None for event types we do not handle

    Raises:
        MalformedEventError: If a delivery status event lacks its delivery id
    """
    try:
        event = _CourierEvent.model_validate(payload)
    except ValidationError as e:
        raise MalformedEventError("Invalid Uber event envelope") from e

    if event.event_type != COURIER_DELIVERY_STATUS_EVENT:
        return None
    if event.meta is None:
        raise MalformedEventError("Uber delivery status event without meta")

    try:
        meta = _CourierMeta.model_validate(event.meta)
    except ValidationError as e:
        raise MalformedEventError("Uber delivery status event without delivery_id") from e

    status = map_courier_status(meta.status)

    return NormalizedEvent(
        source=EventSource.COURIER,
        external_event_id=courier_event_id(meta.delivery_id, status),
        order_ref=None,
        kind=EventKind.DELIVERY_STATUS_CHANGED,
        status_value=status.value,
        provider_ref=meta.delivery_id,
    )


async def resolve_courier_order(
    session: AsyncSession,
    event: NormalizedEvent,
) -> NormalizedEvent:
    """
    Attach the order whose delivery_id matches the courier's delivery id.

    Returns the event unchanged (order_ref None) when nothing matches.
    """
    result = await session.execute(
        select(Order.id).where(Order.delivery_id == event.provider_ref)
    )
    order_id = result.scalar_one_or_none()

    if order_id is None:
        logger.info(f"Uber: No order for delivery {event.provider_ref}")
        return event

    return replace(event, order_ref=order_id)
