"""Shared fixtures for the Hubplate Payments test suite."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from decimal import Decimal
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from hubplate.core.config import Settings
from hubplate.database import init_db, make_session_factory
from hubplate.models import (
    FulfillmentStatus,
    Location,
    Order,
    OrderType,
    PaymentStatus,
)
from hubplate.reconciliation.state_machine import OrderStateMachine
from hubplate.services.payment.mock import MockPaymentService

STRIPE_SECRET = "whsec_test_secret"
UBER_SECRET = "uber-test-signing-key"


# ── Settings & database ───────────────────────────────────────────────────


@pytest.fixture()
def settings() -> Settings:
    """Development settings with known webhook secrets, no .env file."""
    return Settings(
        _env_file=None,
        env_mode="development",
        stripe_webhook_secret=STRIPE_SECRET,
        uber_webhook_signing_key=UBER_SECRET,
        paid_hook_url=None,
    )


@pytest_asyncio.fixture()
async def engine(tmp_path) -> AsyncEngine:
    """A file-backed SQLite engine, so concurrent sessions see each other."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'hubplate.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return make_session_factory(engine)


@pytest_asyncio.fixture()
async def session(session_factory):
    async with session_factory() as session:
        yield session


# ── Domain objects ────────────────────────────────────────────────────────


class PaidRecorder:
    """Paid listener that remembers which orders it was told about."""

    def __init__(self):
        self.order_ids: list[str] = []

    def __call__(self, order: Order) -> None:
        self.order_ids.append(order.id)


@pytest.fixture()
def paid_recorder() -> PaidRecorder:
    return PaidRecorder()


@pytest.fixture()
def state_machine(paid_recorder: PaidRecorder) -> OrderStateMachine:
    machine = OrderStateMachine(max_attempts=3)
    machine.on_paid(paid_recorder)
    return machine


@pytest.fixture()
def payment_service() -> MockPaymentService:
    return MockPaymentService(failure_rate=0.0, min_latency=0, max_latency=0)


@pytest.fixture()
def make_location(session_factory) -> Callable[..., Any]:
    async def _make(
        stripe_account_id: Optional[str] = None,
        uber_organization_id: Optional[str] = None,
        address: str = "12 Market Street",
        payouts_enabled: bool = False,
    ) -> str:
        async with session_factory() as session:
            location = Location(
                name="Test Bistro",
                address=address,
                stripe_account_id=stripe_account_id,
                uber_organization_id=uber_organization_id,
                payouts_enabled=payouts_enabled,
            )
            session.add(location)
            await session.commit()
            return location.id

    return _make


@pytest.fixture()
def make_order(session_factory, make_location) -> Callable[..., Any]:
    """Insert an order directly, bypassing the state machine, and return its id."""

    async def _make(
        order_type: OrderType = OrderType.DINE_IN,
        payment_status: PaymentStatus = PaymentStatus.UNPAID,
        fulfillment_status: FulfillmentStatus = FulfillmentStatus.PENDING,
        delivery_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        total: Decimal = Decimal("25.00"),
        location_id: Optional[str] = None,
        tip: Decimal = Decimal("0"),
    ) -> str:
        location_id = location_id or await make_location()
        async with session_factory() as session:
            order = Order(
                location_id=location_id,
                order_type=order_type,
                payment_status=payment_status,
                fulfillment_status=fulfillment_status,
                delivery_id=delivery_id,
                payment_intent_id=payment_intent_id,
                subtotal=total - tip,
                tax=Decimal("0"),
                tip=tip,
                delivery_fee=Decimal("0"),
                total=total,
            )
            session.add(order)
            await session.commit()
            return order.id

    return _make


@pytest.fixture()
def fetch_order(session_factory) -> Callable[..., Any]:
    """Read an order in a fresh session."""

    async def _fetch(order_id: str) -> Order:
        async with session_factory() as session:
            order = await session.get(Order, order_id)
            assert order is not None
            return order

    return _fetch


# ── Webhook payloads ──────────────────────────────────────────────────────


def sign_stripe(body: bytes, secret: str = STRIPE_SECRET, timestamp: Optional[int] = None) -> str:
    """Compute a valid Stripe-Signature header."""
    ts = timestamp or int(time.time())
    signed_payload = f"{ts}.".encode() + body
    sig = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def sign_uber(body: bytes, secret: str = UBER_SECRET) -> str:
    """Compute a valid X-Uber-Signature header."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def stripe_payload(
    event_type: str,
    order_id: Optional[str] = None,
    event_id: Optional[str] = None,
    intent_id: str = "pi_test_123",
) -> bytes:
    metadata = {"order_id": order_id} if order_id else {}
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
            "type": event_type,
            "data": {"object": {"id": intent_id, "metadata": metadata}},
        }
    ).encode()


def account_payload(
    account_id: str,
    charges_enabled: bool,
    details_submitted: bool,
    event_id: Optional[str] = None,
) -> bytes:
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
            "type": "account.updated",
            "data": {
                "object": {
                    "id": account_id,
                    "charges_enabled": charges_enabled,
                    "details_submitted": details_submitted,
                }
            },
        }
    ).encode()


def uber_payload(delivery_id: str, status: Any) -> bytes:
    return json.dumps(
        {
            "event_type": "event.delivery_status",
            "meta": {"delivery_id": delivery_id, "status": status},
        }
    ).encode()
