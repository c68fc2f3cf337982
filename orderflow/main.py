"""
FastAPI Application Entry Point

Restaurant Order Flow - order lifecycle and claim locking for kitchen and
service staff dashboards. Clients poll the read endpoints and send every
write with the version they last saw.

Endpoints:
    - GET  /api/orders: List orders (status / claim holder filters)
    - GET  /api/orders/available: Orders open for a role's claim
    - GET  /api/orders/{id}: Order snapshot with allowed actions
    - POST /api/orders: Create an order (order creation hook)
    - POST /api/orders/{id}/claim: Claim for kitchen or service work
    - POST /api/orders/{id}/advance: Move to the next status
    - POST /api/orders/{id}/cancel: Cancel (owner or admin)
    - POST /api/orders/{id}/release: Admin claim release
    - POST /webhook/payment: Payment provider events
    - GET  /health: System health check

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import sys
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Query, Request, Header, status as http_status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
import redis

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from orderflow.core.config import EffectsBackend, get_settings, setup_logging
from orderflow.core.exceptions import TransitionError
from orderflow.database import async_session_maker, get_db, init_db, engine
from orderflow.models import Actor, ActorRole, ClaimRole, Order, OrderStatus, PaymentStatus
from orderflow.schemas import (
    AdvanceRequest,
    CancelRequest,
    ClaimRequest,
    ErrorResponse,
    HealthResponse,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    PaymentWebhookResponse,
    ReassignRequest,
    ReleaseRequest,
)
from orderflow.services.claim_manager import ClaimManager
from orderflow.services.effects import InlineEffectPublisher, build_effect_dispatcher, build_effect_publisher
from orderflow.services.notifications import get_notification_service
from orderflow.services.order_store import OrderStore
from orderflow.services.payment import get_payment_service

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


@lru_cache()
def get_claim_manager() -> ClaimManager:
    """Process-wide engine wired to the configured effect publisher."""
    store = OrderStore(async_session_maker)
    return ClaimManager(store, build_effect_publisher(store))


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
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Effects: {settings.effects_backend.value}")
    logger.info("=" * 60)

    await init_db()

    payment_service = get_payment_service()
    notification_service = get_notification_service()
    logger.info(f"✅ Payment Service: {payment_service.provider_name}")
    logger.info(f"✅ Notification Service: {notification_service.provider_name}")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("✅ Application ready!")

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    publisher = app.dependency_overrides.get(get_claim_manager, get_claim_manager)().publisher
    if isinstance(publisher, InlineEffectPublisher):
        await publisher.drain()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order lifecycle with optimistic concurrency and exclusive kitchen/service "
        "claims. Every write carries the version the client last observed."
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

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid transition"},
    404: {"model": ErrorResponse, "description": "Order not found"},
    409: {"model": ErrorResponse, "description": "Claim held by another worker"},
    412: {"model": ErrorResponse, "description": "Stale version, refetch and retry"},
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

async def get_actor(
    x_actor_id: str = Header(..., min_length=1, max_length=64),
    x_actor_role: ActorRole = Header(...),
) -> Actor:
    """Identity supplied by the session layer; trusted as-is."""
    return Actor(actor_id=x_actor_id, role=x_actor_role)


async def get_optional_actor(
    x_actor_id: Optional[str] = Header(None, max_length=64),
    x_actor_role: Optional[ActorRole] = Header(None),
) -> Optional[Actor]:
    if not x_actor_id or x_actor_role is None:
        return None
    return Actor(actor_id=x_actor_id, role=x_actor_role)


def to_response(order: Order, actor: Optional[Actor] = None) -> OrderResponse:
    """Serialize an order, with the actions ``actor`` may take on it."""
    response = OrderResponse.model_validate(order)
    if actor is not None:
        response.allowed_actions = ClaimManager.allowed_targets(order, actor)
    return response


def to_list_response(total: int, orders: list[Order], actor: Optional[Actor]) -> OrderListResponse:
    return OrderListResponse(
        total=total,
        orders=[to_response(order, actor) for order in orders],
        poll_interval_seconds=settings.poll_interval_seconds,
    )


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
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
    db: AsyncSession = Depends(get_db)
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(select(func.count(Order.id)))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check Redis (only needed by the Celery effects backend)
    if settings.effects_backend == EffectsBackend.CELERY:
        redis_status = "healthy"
        try:
            r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
            r.ping()
            r.close()
        except redis.RedisError as e:
            redis_status = f"unhealthy: {str(e)}"
            logger.error(f"Redis health check failed: {e}")
    else:
        redis_status = "not used"

    payment_status = "healthy" if await get_payment_service().health_check() else "unhealthy"
    notification_status = "healthy" if await get_notification_service().health_check() else "unhealthy"

    all_healthy = all(
        s in ("healthy", "not used")
        for s in [db_status, redis_status, payment_status, notification_status]
    )

    return HealthResponse(
        status="healthy" if all_healthy else "degraded",
        database=db_status,
        redis=redis_status,
        payment_service=payment_status,
        notification_service=notification_status,
        effects_backend=settings.effects_backend.value,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# ORDER READ ENDPOINTS
# =============================================================================

@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    status: Optional[List[OrderStatus]] = Query(None),
    holder_id: Optional[str] = Query(None),
    role: Optional[ClaimRole] = Query(None),
    handled_by: Optional[str] = Query(None),
    owner_id: Optional[str] = Query(None),
    payment_status: Optional[PaymentStatus] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    actor: Optional[Actor] = Depends(get_optional_actor),
    manager: ClaimManager = Depends(get_claim_manager),
) -> OrderListResponse:
    """
    Orders filtered by status, claim holder, owner or payment status,
    oldest first. Customers poll their own orders with ``owner_id``.
    """
    total, orders = await manager.list_orders(
        status=status,
        holder_id=holder_id,
        role=role,
        handled_by=handled_by,
        owner_id=owner_id,
        payment_status=payment_status,
        skip=skip,
        limit=limit,
    )
    return to_list_response(total, orders, actor)


@app.get(
    "/api/orders/available",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="Orders Open For Claiming",
)
async def available_orders(
    role: ClaimRole = Query(...),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    actor: Optional[Actor] = Depends(get_optional_actor),
    manager: ClaimManager = Depends(get_claim_manager),
) -> OrderListResponse:
    """Kitchen: unclaimed PENDING orders. Service: unclaimed READY_TO_SERVE orders."""
    total, orders = await manager.available_for(role, skip=skip, limit=limit)
    return to_list_response(total, orders, actor)


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderResponse,
    responses={404: ERROR_RESPONSES[404]},
    tags=["Orders"],
)
async def get_order(
    order_id: str,
    actor: Optional[Actor] = Depends(get_optional_actor),
    manager: ClaimManager = Depends(get_claim_manager),
) -> OrderResponse:
    """Get a specific order by ID."""
    order = await manager.get_order(order_id)
    return to_response(order, actor)


# =============================================================================
# ORDER WRITE ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderResponse,
    status_code=http_status.HTTP_201_CREATED,
    tags=["Orders"],
    summary="Create Order",
)
async def create_order(
    order_data: OrderCreate,
    actor: Actor = Depends(get_actor),
    manager: ClaimManager = Depends(get_claim_manager),
) -> OrderResponse:
    """
    Create a PENDING order owned by the calling actor.

    Stands in for the order creation subsystem; menu content is not validated.
    """
    order = await manager.store.create(
        owner_id=actor.actor_id,
        items=[item.model_dump() for item in order_data.items],
        customer_email=order_data.customer_email,
        customer_phone=order_data.customer_phone,
        special_instructions=order_data.special_instructions,
        table_number=order_data.table_number,
        payment_intent_id=order_data.payment_intent_id,
    )
    return to_response(order, actor)


@app.post(
    "/api/orders/{order_id}/claim",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Transitions"],
)
async def claim_order(
    order_id: str,
    request: ClaimRequest,
    actor: Actor = Depends(get_actor),
    manager: ClaimManager = Depends(get_claim_manager),
) -> OrderResponse:
    """Claim an order for kitchen or service work (moves it to PREPARING / SERVED)."""
    order = await manager.claim(order_id, request.role, actor, request.expected_version)
    return to_response(order, actor)


@app.post(
    "/api/orders/{order_id}/advance",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Transitions"],
)
async def advance_order(
    order_id: str,
    request: AdvanceRequest,
    actor: Actor = Depends(get_actor),
    manager: ClaimManager = Depends(get_claim_manager),
) -> OrderResponse:
    order = await manager.advance(order_id, request.to_status, actor, request.expected_version)
    return to_response(order, actor)


@app.post(
    "/api/orders/{order_id}/cancel",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Transitions"],
)
async def cancel_order(
    order_id: str,
    request: CancelRequest,
    actor: Actor = Depends(get_actor),
    manager: ClaimManager = Depends(get_claim_manager),
) -> OrderResponse:
    """Cancel a PENDING or PREPARING order."""
    order = await manager.cancel(order_id, actor, request.expected_version, request.reason)
    return to_response(order, actor)


@app.post(
    "/api/orders/{order_id}/release",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Admin"],
)
async def release_claim(
    order_id: str,
    request: ReleaseRequest,
    actor: Actor = Depends(get_actor),
    manager: ClaimManager = Depends(get_claim_manager),
) -> OrderResponse:
    """Administrative override: free a claim so another worker can take the order."""
    order = await manager.release(order_id, request.role, actor, request.expected_version)
    return to_response(order, actor)


@app.post(
    "/api/orders/{order_id}/reassign",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Admin"],
)
async def reassign_claim(
    order_id: str,
    request: ReassignRequest,
    actor: Actor = Depends(get_actor),
    manager: ClaimManager = Depends(get_claim_manager),
) -> OrderResponse:
    """Administrative override: hand a held claim to a named worker in one write."""
    order = await manager.reassign(
        order_id, request.role, request.new_holder_id, actor, request.expected_version,
    )
    return to_response(order, actor)


# =============================================================================
# PAYMENT WEBHOOK
# =============================================================================

@app.post(
    "/webhook/payment",
    response_model=PaymentWebhookResponse,
    responses={400: {"model": ErrorResponse}, 404: ERROR_RESPONSES[404]},
    tags=["Webhooks"],
)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    manager: ClaimManager = Depends(get_claim_manager),
):
    """Mirror payment provider events onto the order's payment status."""
    payload = await request.body()
    payment_service = get_payment_service()

    event = await payment_service.verify_webhook(payload, stripe_signature or "")
    if event is None:
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="invalid_webhook", detail="Webhook verification failed").model_dump(),
        )

    payment_event = payment_service.parse_payment_event(event)
    if payment_event is None:
        return PaymentWebhookResponse(received=True)

    dispatcher = build_effect_dispatcher(manager.store)
    updated = await dispatcher.apply_payment_event(payment_event)

    return PaymentWebhookResponse(
        received=True,
        order_id=payment_event.order_id,
        payment_status=payment_event.payment_status,
        updated=updated,
    )


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(TransitionError)
async def transition_error_handler(request: Request, exc: TransitionError) -> JSONResponse:
    """Domain errors go back to the caller as-is; the UI picks the recovery."""
    logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


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
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "orderflow.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
