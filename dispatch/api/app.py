"""
FastAPI application factory.

* Registers routes for trips, drivers, invoices, notifications and admin.
* Builds the trip lifecycle coordinator once per process and starts / stops
  the background auditor via lifespan events.
* Maps the domain error taxonomy to HTTP status codes.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from dispatch.api.middleware import limiter
from dispatch.api.routes import admin, drivers, invoices, notifications, trips
from dispatch.config import settings
from dispatch.domain.errors import (
    AssignmentMismatch,
    ConflictingTransition,
    DispatchError,
    DriverUnavailable,
    Forbidden,
    InvalidInvoiceTransition,
    InvalidTransition,
    InvalidTripLinkage,
    NotFound,
    PaymentDeclined,
    PaymentGatewayError,
    Unauthorized,
)
from dispatch.infrastructure.database import async_session_factory
from dispatch.infrastructure.payment_gateway import HttpPaymentGateway
from dispatch.infrastructure.push import PushClient
from dispatch.infrastructure.redis_client import close_redis
from dispatch.infrastructure.stores import SqlDriverStore, SqlInvoiceStore, SqlTripStore
from dispatch.services.coordinator import TripLifecycleCoordinator
from dispatch.services.notifier import NotificationService
from dispatch.workers import auditor as _auditor

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

# Most specific first; lookup walks this list in order
ERROR_STATUS: list[tuple[type[DispatchError], int]] = [
    (NotFound, 404),
    (ConflictingTransition, 409),
    (InvalidTransition, 409),
    (InvalidInvoiceTransition, 409),
    (DriverUnavailable, 409),
    (InvalidTripLinkage, 422),
    (Unauthorized, 401),
    (Forbidden, 403),
    (AssignmentMismatch, 403),
    (PaymentDeclined, 402),
    (PaymentGatewayError, 503),
]


def status_for(error: DispatchError) -> int:
    for error_cls, status_code in ERROR_STATUS:
        if isinstance(error, error_cls):
            return status_code
    return 500


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code, content={"detail": str(exc)}, headers=headers
    )


def build_coordinator(session_factory=async_session_factory) -> TripLifecycleCoordinator:
    return TripLifecycleCoordinator(
        trips=SqlTripStore(session_factory),
        drivers=SqlDriverStore(session_factory),
        payments=HttpPaymentGateway.from_settings(settings),
        notifier=NotificationService(session_factory, PushClient.from_settings(settings)),
        invoices=SqlInvoiceStore(session_factory, settings.invoice_due_days),
        max_payment_attempts=settings.max_payment_attempts,
        max_payment_reminders=settings.max_payment_reminders,
        require_driver_confirmation=settings.require_driver_confirmation,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire collaborators and start the auditor on startup; drain on shutdown."""
    app.state.session_factory = async_session_factory
    app.state.driver_store = SqlDriverStore(async_session_factory)
    app.state.coordinator = build_coordinator(async_session_factory)
    await _auditor.start_auditor_loop()
    yield
    await _auditor.stop_auditor_loop()
    await app.state.coordinator.drain()
    await close_redis()


def create_app() -> FastAPI:
    app = FastAPI(
        title="NEMT Dispatch API",
        description=(
            "Dispatcher back office for non-emergency medical transportation. "
            "Approves and completes trips, captures payment on approval, keeps "
            "driver availability consistent and notifies everyone involved."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_exception_handler(DispatchError, dispatch_error_handler)

    # Routers
    app.include_router(trips.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(invoices.router, prefix="/api/v1")
    app.include_router(notifications.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
