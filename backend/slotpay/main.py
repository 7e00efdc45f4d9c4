# backend/slotpay/main.py
"""
SlotPay API

Booking, payment and refund orchestration for single-provider appointment
slots. Routes are thin: each one hands off to a service in ``slotpay.services``.
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI

from .core.config import is_running_tests, settings
from .core.request_context import attach_request_id_filter
from .database import init_db
from .errors import register_error_handlers
from .middleware.prometheus_middleware import PrometheusMiddleware
from .middleware.request_id import RequestIdMiddleware
from .routes import prometheus, ready
from .routes.v1 import (
    availability as availability_v1,
    bookings as bookings_v1,
    orders as orders_v1,
    payments as payments_v1,
    refunds as refunds_v1,
)

API_TITLE = "SlotPay API"
API_VERSION = "1.0.0"

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
)
attach_request_id_filter()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown."""
    logger.info("SlotPay API starting up...")
    logger.info(f"Environment: {settings.environment}")
    if settings.is_sqlite and not is_running_tests():
        # Local development without migrations: create tables on first boot.
        init_db()
    if settings.gateway_fake:
        logger.warning("Payment gateway is running in fake mode; no real money moves")

    yield

    logger.info("SlotPay API shutting down...")


app = FastAPI(
    title=API_TITLE,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=app_lifespan,
)
register_error_handlers(app)

# Middleware runs in reverse order of registration: request ids bind first.
app.add_middleware(PrometheusMiddleware)
app.add_middleware(RequestIdMiddleware)

api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(availability_v1.router, prefix="/providers")
api_v1.include_router(orders_v1.router, prefix="/orders")
api_v1.include_router(payments_v1.router, prefix="/payments")
api_v1.include_router(bookings_v1.router, prefix="/bookings")
api_v1.include_router(refunds_v1.router, prefix="/refunds")

# Mount API v1 first
app.include_router(api_v1)

# Infrastructure routes stay unversioned; probes and scrapers depend on fixed paths.
app.include_router(ready.router)
app.include_router(prometheus.router)
