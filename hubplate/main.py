"""
FastAPI Application Entry Point

Hubplate Payments - order payment & fulfillment reconciliation.
Supports both Mock services (development) and Real APIs (production).

Endpoints:
    - POST /webhooks/stripe: Stripe webhook (fail closed on bad signature)
    - POST /webhooks/uber: Uber Direct webhook (acknowledges anything JSON)
    - POST /api/payments/terminal: Card-present intent for a Terminal reader
    - POST /api/payments/terminal/connection-token: Terminal reader token
    - POST /api/payments/manual-charge: Charge a stored payment method
    - POST /api/payments/pay-at-table: Intent the guest pays on their own device
    - POST /api/delivery/quote: Courier quote with platform markup
    - POST /api/orders/{order_id}/delivery: Book a courier for an order
    - GET /api/orders/{order_id}: Current order state
    - POST /simulation/orders: Seed an order (development only)
    - GET /health: System health check
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Optional

import redis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

# Internal imports
from hubplate.core.config import Settings, get_settings, setup_logging
from hubplate.core.exceptions import (
    AmountMismatchError,
    CaptureFailedError,
    DeliveryRequestError,
    HubplateError,
    LocationNotFoundError,
    MalformedEventError,
    OrderNotFoundError,
    OrderStateConflictError,
    PersistenceError,
    SignatureRejectedError,
)
from hubplate.database import get_db, get_engine, init_db
from hubplate.models import Location, Order, OrderType
from hubplate.reconciliation import (
    DeliveryDispatcher,
    OrderStateMachine,
    PaymentCaptureOrchestrator,
    WebhookReconciler,
)
from hubplate.reconciliation.signatures import (
    COURIER_SIGNATURE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
)
from hubplate.schemas import (
    CaptureRequest,
    CaptureResponse,
    ConnectionTokenResponse,
    DeliveryCreateRequest,
    DeliveryQuoteRequest,
    DeliveryQuoteResponse,
    ErrorResponse,
    HealthResponse,
    OrderResponse,
    SimulatedOrderCreate,
    WebhookAck,
)
from hubplate.services.delivery import (
    BaseDeliveryService,
    DeliveryContact,
    ManifestItem,
    get_delivery_service,
)
from hubplate.services.payment import BasePaymentService, get_payment_service
from hubplate.tasks import enqueue_paid_notification

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    engine = get_engine()
    await init_db(engine)
    logger.info("Database initialized")

    # Log service configuration
    logger.info(f"Payment Service: {get_payment_service().provider_name}")
    logger.info(f"Delivery Service: {get_delivery_service().provider_name}")
    logger.info(
        f"Signature policy: stripe={settings.payment_signature_policy.value}, "
        f"uber={settings.courier_signature_policy.value}"
    )

    # Validate production config
    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"Missing production config: {missing}")

    logger.info("Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await engine.dispose()
    logger.info("Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Payment and fulfillment reconciliation for restaurant orders. "
        "Stripe and Uber Direct webhooks and POS captures all converge on "
        "one order state machine."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

@lru_cache()
def get_state_machine() -> OrderStateMachine:
    """Process-wide state machine with the paid notification attached."""
    state_machine = OrderStateMachine(max_attempts=get_settings().transition_max_attempts)
    state_machine.on_paid(enqueue_paid_notification)
    return state_machine


def get_reconciler(
    state_machine: OrderStateMachine = Depends(get_state_machine),
    settings: Settings = Depends(get_settings),
) -> WebhookReconciler:
    return WebhookReconciler(state_machine, settings)


def get_capture_orchestrator(
    state_machine: OrderStateMachine = Depends(get_state_machine),
    payment_service: BasePaymentService = Depends(get_payment_service),
    settings: Settings = Depends(get_settings),
) -> PaymentCaptureOrchestrator:
    return PaymentCaptureOrchestrator(payment_service, state_machine, settings)


def get_delivery_dispatcher(
    state_machine: OrderStateMachine = Depends(get_state_machine),
    delivery_service: BaseDeliveryService = Depends(get_delivery_service),
    settings: Settings = Depends(get_settings),
) -> DeliveryDispatcher:
    return DeliveryDispatcher(delivery_service, state_machine, settings)


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    payment_service: BasePaymentService = Depends(get_payment_service),
    delivery_service: BaseDeliveryService = Depends(get_delivery_service),
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(select(func.count()).select_from(Order))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check Redis
    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    payment_status = "healthy" if await payment_service.health_check() else "unhealthy"
    delivery_status = "healthy" if await delivery_service.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status, payment_status, delivery_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        payment_service=payment_status,
        delivery_service=delivery_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# WEBHOOK ENDPOINTS
# =============================================================================

@app.post(
    "/webhooks/stripe",
    response_model=WebhookAck,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    tags=["Webhooks"],
    summary="Stripe Webhook",
)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reconciler: WebhookReconciler = Depends(get_reconciler),
    stripe_signature: Optional[str] = Header(None, alias=PAYMENT_SIGNATURE_HEADER),
) -> WebhookAck:
    """
    Handle payment_intent.succeeded, payment_intent.payment_failed and
    account.updated. Other event types are acknowledged and ignored.

    Configure this URL in the Stripe dashboard:
        https://your-domain.com/webhooks/stripe
    """
    # Raw bytes: the signature covers the body exactly as sent
    body = await request.body()
    await reconciler.handle_payment_webhook(db, body, stripe_signature)
    return WebhookAck()


@app.post(
    "/webhooks/uber",
    response_model=WebhookAck,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    tags=["Webhooks"],
    summary="Uber Direct Webhook",
)
async def uber_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reconciler: WebhookReconciler = Depends(get_reconciler),
    uber_signature: Optional[str] = Header(None, alias=COURIER_SIGNATURE_HEADER),
) -> WebhookAck:
    """
    Handle event.delivery_status. Any JSON body is acknowledged with 200,
    including ones with a bad signature, so Uber keeps the endpoint enabled.
    """
    body = await request.body()
    await reconciler.handle_courier_webhook(db, body, uber_signature)
    return WebhookAck()


# =============================================================================
# PAYMENT ENDPOINTS
# =============================================================================

@app.post(
    "/api/payments/terminal",
    response_model=CaptureResponse,
    responses={
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    tags=["Payments"],
    summary="Terminal Payment Intent",
)
async def terminal_payment(
    payload: CaptureRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentCaptureOrchestrator = Depends(get_capture_orchestrator),
) -> CaptureResponse:
    """
    Create a card-present intent for the order total. The order is marked
    paid when Stripe's webhook confirms the capture.
    """
    result = await orchestrator.terminal_capture(
        db,
        payload.order_id,
        amount=payload.amount,
        tip=payload.tip,
    )
    return CaptureResponse(
        status=result.status,
        provider_intent_id=result.provider_intent_id,
        client_secret=result.client_secret,
    )


@app.post(
    "/api/payments/terminal/connection-token",
    response_model=ConnectionTokenResponse,
    responses={502: {"model": ErrorResponse}},
    tags=["Payments"],
    summary="Terminal Connection Token",
)
async def terminal_connection_token(
    orchestrator: PaymentCaptureOrchestrator = Depends(get_capture_orchestrator),
) -> ConnectionTokenResponse:
    """Issue a connection token for a Stripe Terminal reader."""
    result = await orchestrator.create_connection_token()
    if not result.success:
        raise HTTPException(
            status_code=502,
            detail=result.error_message or "Failed to create connection token",
        )
    return ConnectionTokenResponse(secret=result.secret)


@app.post(
    "/api/payments/manual-charge",
    response_model=CaptureResponse,
    responses={
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    tags=["Payments"],
    summary="Manual Card Charge",
)
async def manual_charge(
    payload: CaptureRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentCaptureOrchestrator = Depends(get_capture_orchestrator),
) -> CaptureResponse:
    """
    Charge a stored payment method for the order total. On success the
    order is paid immediately; the later webhook is a no-op.
    """
    if not payload.payment_method_id:
        raise HTTPException(status_code=400, detail="payment_method_id is required")

    result = await orchestrator.manual_charge(
        db,
        payload.order_id,
        payment_method_id=payload.payment_method_id,
        amount=payload.amount,
        tip=payload.tip,
    )
    return CaptureResponse(
        status=result.status,
        provider_intent_id=result.provider_intent_id,
    )


@app.post(
    "/api/payments/pay-at-table",
    response_model=CaptureResponse,
    responses={
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    tags=["Payments"],
    summary="Pay At Table Intent",
)
async def pay_at_table(
    payload: CaptureRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentCaptureOrchestrator = Depends(get_capture_orchestrator),
) -> CaptureResponse:
    """
    Create an intent for the guest's phone or the online payment page.
    The order is marked paid when Stripe's webhook confirms the payment.
    """
    result = await orchestrator.pay_at_table(
        db,
        payload.order_id,
        amount=payload.amount,
        tip=payload.tip,
    )
    return CaptureResponse(
        status=result.status,
        provider_intent_id=result.provider_intent_id,
        client_secret=result.client_secret,
    )


# =============================================================================
# DELIVERY ENDPOINTS
# =============================================================================

@app.post(
    "/api/delivery/quote",
    response_model=DeliveryQuoteResponse,
    responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    tags=["Delivery"],
    summary="Courier Quote",
)
async def delivery_quote(
    payload: DeliveryQuoteRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: DeliveryDispatcher = Depends(get_delivery_dispatcher),
) -> DeliveryQuoteResponse:
    """Quote a delivery from a location, platform markup included."""
    quote = await dispatcher.quote(
        db,
        payload.location_id,
        payload.address,
        pickup_address=payload.pickup_address,
    )
    return DeliveryQuoteResponse(
        quote_id=quote.quote_id,
        courier_fee=quote.courier_fee_cents,
        markup=quote.markup_cents,
        total_fee=quote.total_fee_cents,
        currency=quote.currency,
        duration=quote.duration,
        pickup_duration=quote.pickup_duration,
        dropoff_eta=quote.dropoff_eta,
    )


@app.post(
    "/api/orders/{order_id}/delivery",
    response_model=OrderResponse,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
    tags=["Delivery"],
    summary="Request Courier",
)
async def request_delivery(
    order_id: str,
    payload: DeliveryCreateRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: DeliveryDispatcher = Depends(get_delivery_dispatcher),
) -> OrderResponse:
    """Book a courier from a quote and store its delivery id on the order."""
    order = await dispatcher.request(
        db,
        order_id,
        payload.quote_id,
        dropoff=DeliveryContact(
            name=payload.dropoff_name,
            address=payload.dropoff_address,
            phone_number=payload.dropoff_phone_number,
        ),
        manifest_items=[
            ManifestItem(name=item.name, quantity=item.quantity)
            for item in payload.manifest_items
        ],
    )
    return OrderResponse.model_validate(order)


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.get(
    "/api/orders/{order_id}",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def get_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    """Get a specific order by ID."""
    result = await db.execute(select(Order).where(Order.id == order_id))
    order = result.scalar_one_or_none()

    if not order:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")

    return OrderResponse.model_validate(order)


@app.post(
    "/simulation/orders",
    response_model=OrderResponse,
    status_code=201,
    tags=["Simulation"],
    summary="Seed Order (Development)",
)
async def simulation_create_order(
    payload: SimulatedOrderCreate,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> OrderResponse:
    """
    Create an order in (PENDING, UNPAID) for local testing.

    Orders normally come from the ordering flow; scripts/simulate.py uses
    this endpoint to get something to reconcile.
    """
    if not settings.is_development:
        raise HTTPException(
            status_code=403,
            detail="Simulation endpoint only available in development mode",
        )

    location_id = payload.location_id
    if location_id is None:
        location = Location(name="Simulation Kitchen", address="1 Test Street")
        db.add(location)
        await db.flush()
        location_id = location.id

    order = Order(
        location_id=location_id,
        order_type=payload.order_type,
        subtotal=payload.subtotal,
        tax=payload.tax,
        tip=payload.tip,
        delivery_fee=payload.delivery_fee,
        total=payload.subtotal + payload.tax + payload.tip + payload.delivery_fee,
        delivery_id=payload.delivery_id if payload.order_type == OrderType.DELIVERY else None,
    )
    db.add(order)
    await db.commit()
    await db.refresh(order)

    logger.info(f"Simulation: Order {order.id} created ({order.order_type.value}, total {order.total})")
    return OrderResponse.model_validate(order)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

# Most specific first
_ERROR_STATUS: list[tuple[type[HubplateError], int]] = [
    (SignatureRejectedError, 400),
    (MalformedEventError, 400),
    (AmountMismatchError, 400),
    (CaptureFailedError, 402),
    (OrderNotFoundError, 404),
    (LocationNotFoundError, 404),
    (OrderStateConflictError, 409),
    (DeliveryRequestError, 502),
    (PersistenceError, 500),
]


@app.exception_handler(HubplateError)
async def domain_exception_handler(request: Request, exc: HubplateError) -> JSONResponse:
    """Translate domain errors into HTTP responses."""
    status_code = 500
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        detail = str(exc) if settings.debug else "Temporarily unable to process the request"
    else:
        logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc}")
        detail = str(exc)

    content = {"detail": detail}
    if isinstance(exc, CaptureFailedError) and exc.code:
        content["code"] = exc.code

    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# =============================================================================
# DEVELOPMENT SERVER
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "hubplate.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )
