"""
FastAPI Application Entry Point.

This is the main application file for the Courier Backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from courier_backend.app.core.config import settings
from courier_backend.app.api.v1.router import router as api_v1_router
from courier_backend.app.core.observability import ObservabilityMiddleware
from courier_backend.app.core.redis_client import ping_redis
from courier_backend.app.db.session import engine, Base
from courier_backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from courier_backend.app.models.audit_log import AuditLog
from courier_backend.app.models.hub import Hub
from courier_backend.app.models.rider import Rider
from courier_backend.app.models.merchant_invoice import MerchantInvoice  # before parcel for FK
from courier_backend.app.models.parcel import Parcel
from courier_backend.app.models.delivery_verification import DeliveryVerification
from courier_backend.app.models.merchant_finance import MerchantFinance
from courier_backend.app.models.merchant_finance_transaction import MerchantFinanceTransaction
from courier_backend.app.models.rider_settlement import RiderSettlement
from courier_backend.app.models.hub_transfer_record import HubTransferRecord


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    Creates database tables on startup.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Courier parcel lifecycle, merchant ledger and cash settlement backend",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status, application information and Redis reachability
    """
    redis_ok = await ping_redis()
    return {
        "status": "healthy" if redis_ok else "degraded",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": "up" if redis_ok else "down",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to Courier Backend API",
        "docs": "/docs",
        "health": "/health",
    }
